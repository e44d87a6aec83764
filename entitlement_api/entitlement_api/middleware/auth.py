"""Bearer-session authentication for dashboard routes.

Every request outside the public set must carry ``Authorization: Bearer
<token>`` issued by :class:`SessionTokenManager`.  On success the token's
``tenant_id``, ``sub`` and ``role`` are attached to ``request.state`` for
the tenant dependency and the role guards.

The billing webhook is public: Stripe authenticates it with the payload
signature instead of a session.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from entitlement_api.security import SessionTokenManager, load_session_secret

logger = logging.getLogger(__name__)

_OPEN_ROUTES: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/api/v1/billing/webhooks",
        "/openapi.json",
        "/favicon.ico",
    }
)
_OPEN_PREFIXES: tuple[str, ...] = ("/docs", "/redoc")

_DEFAULT_ROLE = "viewer"


def _is_open(path: str) -> bool:
    return path in _OPEN_ROUTES or path.startswith(_OPEN_PREFIXES)


def _deny(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated dashboard traffic and attach the session identity.

    Missing or malformed credentials are a 401.  An expired session is a
    403 so the dashboard can tell "log in again" apart from "not allowed".
    """

    def __init__(self, app: Any, token_manager: SessionTokenManager | None = None) -> None:
        super().__init__(app)
        self._tokens = token_manager or SessionTokenManager(
            load_session_secret(os.environ.get("API_PLATFORM_ENV", "dev"))
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_open(request.url.path):
            return await call_next(request)

        header = request.headers.get("authorization")
        if not header:
            return _deny(401, "Missing Authorization header")

        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return _deny(401, "Authorization header must use Bearer scheme")

        try:
            claims = self._tokens.validate_token(token)
        except PermissionError as exc:
            if "expired" in str(exc).lower():
                return _deny(403, "Token has expired")
            logger.debug("Session token rejected on %s: %s", request.url.path, exc)
            return _deny(401, f"Invalid token: {exc}")

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.role = claims.role or _DEFAULT_ROLE
        return await call_next(request)
