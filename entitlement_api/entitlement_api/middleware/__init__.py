"""Starlette middleware and FastAPI guards for the entitlement API."""

from entitlement_api.middleware.auth import AuthenticationMiddleware
from entitlement_api.middleware.logging import RequestLoggingMiddleware
from entitlement_api.middleware.rbac import Permission, Role, require_permission

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "RequestLoggingMiddleware",
    "Role",
    "require_permission",
]
