import logging

from starlette.middleware.base import BaseHTTPMiddleware

from fitbill.core.metrics import http_requests_total, normalize_path

logger = logging.getLogger("fitbill")


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests per method, normalized path and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        _record(request, response)
        return response


def _record(request, response) -> None:
    try:
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": normalize_path(request.url.path),
            "status": str(getattr(response, "status_code", 0) or 0),
        })
    except Exception:
        # Metrics never fail a request
        logger.debug("metrics.record_failed", exc_info=True)
