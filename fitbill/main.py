import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from fitbill/.env before settings are imported
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from fitbill.core.config import settings, validate_config  # noqa: E402
from fitbill.core.database import dispose_engine  # noqa: E402
from fitbill.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from fitbill.core.logging import configure_logging  # noqa: E402
from fitbill.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from fitbill.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from fitbill.core.validation import validate_env  # noqa: E402
from fitbill.api import admin_payments, entitlements, health, jobs, payments  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("fitbill")
    logger.info("Starting fitbill payments service...")
    try:
        yield
    finally:
        dispose_engine()
        logger.info("Stopping fitbill payments service...")


app = FastAPI(title="fitbill - payments & entitlements", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:8080"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(payments.router)
app.include_router(entitlements.router)
app.include_router(admin_payments.router)
app.include_router(jobs.router)
