"""Access logging for the entitlement API.

One record per request on the ``entitlement_api.access`` logger, carrying
an ``X-Correlation-ID`` that is echoed back to the caller.  Health checks
are logged at DEBUG so load-balancer polling does not drown out billing
and retention traffic.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("entitlement_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

_HEALTH_SUFFIXES: tuple[str, ...] = ("/health",)


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path.endswith(_HEALTH_SUFFIXES):
        return logging.DEBUG
    return logging.INFO


def _access_record(request: Request, status_code: int, elapsed: float, correlation_id: str) -> dict[str, Any]:
    # Header values are left out entirely; webhook signatures and bearer
    # tokens never reach the log stream.
    return {
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "correlation_id": correlation_id,
        "tenant_id": getattr(request.state, "tenant_id", None),
        "client": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one access record per request and propagate the correlation ID."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            record = _access_record(request, status_code, time.perf_counter() - started, correlation_id)
            logger.log(
                _level_for(request.url.path, status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": record},
            )
