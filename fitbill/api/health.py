"""Liveness, readiness and metrics endpoints."""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from fitbill.core.database import check_connection, get_engine
from fitbill.core.metrics import METRICS

logger = logging.getLogger("fitbill")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "entitlements",
    "plan_catalog",
    "integration_configs",
    "payment_requests",
    "ledger_entries",
    "admin_actions",
]


@root_router.get("/healthz")
def healthz():
    """Liveness (no dependencies)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness: store reachable and schema present."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception:
        logger.exception("readyz.inspect_failed")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "schema check failed"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("readyz.missing_tables", extra={"error_code": "schema_incomplete"})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}


@root_router.get("/metrics")
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
