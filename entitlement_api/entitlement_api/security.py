"""Session token issuing and validation.

Dashboard sessions carry a bearer token of the form::

    dsess.<urlsafe-b64(payload json)>.<hex hmac-sha256(payload json)>

The HMAC key comes from the ``SESSION_SECRET`` environment variable.  The
payload holds the tenant id, the subject, the role claim used for RBAC,
and issue/expiry times.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
import uuid

from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "dsess"
DEFAULT_TTL_SECONDS = 3600


class SessionClaims(BaseModel):
    """Validated claims carried by a session token."""

    sub: str
    tenant_id: str = Field(..., min_length=1)
    role: str = "owner"
    iat: float
    exp: float
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)


class SessionTokenManager:
    """Issue and validate HMAC-signed session tokens.

    Parameters
    ----------
    secret:
        HMAC-SHA256 signing key.
    ttl_seconds:
        Default token lifetime for :meth:`issue_token`.
    """

    def __init__(self, secret: SecretStr, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        if not secret.get_secret_value():
            raise ValueError("Session secret must not be empty")
        self._secret = secret
        self._ttl_seconds = ttl_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(
            self._secret.get_secret_value().encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def issue_token(
        self,
        tenant_id: str,
        *,
        sub: str,
        role: str = "owner",
        ttl_seconds: int | None = None,
    ) -> str:
        """Return a signed bearer token for *tenant_id*."""
        now = time.time()
        claims = SessionClaims(
            sub=sub,
            tenant_id=tenant_id,
            role=role,
            iat=now,
            exp=now + (ttl_seconds or self._ttl_seconds),
        )
        payload_json = claims.model_dump_json()
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> SessionClaims:
        """Verify signature and expiry and return the claims.

        Raises
        ------
        PermissionError
            If the token is malformed, has a bad signature, or has expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed session token")

        try:
            payload_json = base64.urlsafe_b64decode(parts[1].encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise PermissionError("Malformed session token") from exc

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Invalid token signature")

        try:
            claims = SessionClaims.model_validate(json.loads(payload_json))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise PermissionError("Malformed session token payload") from exc

        if claims.exp < time.time():
            raise PermissionError("Token has expired")
        return claims


def load_session_secret(platform_env: str = "dev") -> SecretStr:
    """Read ``SESSION_SECRET``; generate a per-process secret only in dev.

    Raises
    ------
    RuntimeError
        If the secret is missing outside the dev environment.
    """
    value = os.environ.get("SESSION_SECRET", "")
    if value:
        return SecretStr(value)
    if platform_env != "dev":
        raise RuntimeError(
            f"SESSION_SECRET environment variable must be set when platform_env={platform_env}. "
            "Refusing to start with an insecure default secret."
        )
    logger.warning(
        "SESSION_SECRET not set; generated random per-process dev secret. "
        "Tokens will not survive process restarts."
    )
    return SecretStr(f"dev-{secrets.token_hex(32)}")
