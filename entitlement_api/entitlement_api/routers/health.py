"""Health-check endpoint.

Always returns HTTP 200 so load-balancers see the service as alive; the
``db`` field reports whether the database answered.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from entitlement_api import __version__
from entitlement_api.dependencies import SessionDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Return service health with a database connectivity check."""
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "billing_enabled": settings.billing_enabled,
        "retention_enabled": settings.retention_enabled,
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result
