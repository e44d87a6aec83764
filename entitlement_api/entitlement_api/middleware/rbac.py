"""Role guards for dashboard endpoints.

Roles are ordered (``VIEWER < OWNER < ADMIN``) and every permission names
the least-privileged role that holds it, so a higher role always carries
everything a lower one can do.

Routers attach a guard as a dependency::

    @router.post("/billing/refresh")
    async def refresh(
        ...,
        _role: Role = Depends(require_permission(Permission.REFRESH_BILLING)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    VIEWER = 0
    OWNER = 1
    ADMIN = 2


class Permission(str, Enum):
    READ_BILLING = "read:billing"
    REFRESH_BILLING = "refresh:billing"
    MANAGE_RETENTION = "manage:retention"
    MANAGE_EMAILS = "manage:emails"


_MINIMUM_ROLE: dict[Permission, Role] = {
    Permission.READ_BILLING: Role.VIEWER,
    Permission.REFRESH_BILLING: Role.OWNER,
    Permission.MANAGE_RETENTION: Role.ADMIN,
    Permission.MANAGE_EMAILS: Role.OWNER,
}


def parse_role(raw: str) -> Role:
    """Map a token ``role`` claim onto :class:`Role`, ignoring case and padding.

    Raises
    ------
    ValueError
        If the claim names no known role.
    """
    name = raw.strip().upper()
    if name not in Role.__members__:
        known = ", ".join(role.name.lower() for role in Role)
        raise ValueError(f"Unknown role '{raw}' (expected one of: {known})")
    return Role[name]


def role_has_permission(role: Role, permission: Permission) -> bool:
    return role >= _MINIMUM_ROLE[permission]


def get_user_role(request: Request) -> Role:
    """Resolve the caller's role from the identity the auth middleware attached.

    No identity is a 401; a claim that names no role is a 403.
    """
    claim: str | None = getattr(request.state, "role", None)
    if claim is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return parse_role(claim)
    except ValueError as exc:
        logger.warning("Rejecting request with role claim %r", claim)
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Build a dependency that admits only roles holding *permission*."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role_has_permission(role, permission):
            return role
        logger.info("Role %s lacks %s", role.name.lower(), permission.value)
        raise HTTPException(
            status_code=403,
            detail=f"Role '{role.name.lower()}' may not perform '{permission.value}'",
        )

    return _guard
