"""Scheduled job triggers (called by the platform cron, not by users)."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Header
from starlette.concurrency import run_in_threadpool

from fitbill.core.config import settings
from fitbill.core.errors import UnauthorizedError
from fitbill.features.entitlements.downgrade_job import run_downgrade_job

logger = logging.getLogger("fitbill.jobs")

router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


def _check_cron_secret(provided: Optional[str]) -> None:
    expected = settings.DOWNGRADE_CRON_SECRET
    if not expected or not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("job.unauthorized", extra={"error_code": "unauthorized"})
        raise UnauthorizedError("Invalid or missing cron secret")


@router.post("/downgrade-expired-plans")
async def downgrade_expired_plans(x_cron_secret: Optional[str] = Header(None)):
    _check_cron_secret(x_cron_secret)
    return await run_in_threadpool(run_downgrade_job)
