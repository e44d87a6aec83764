"""API router modules for the entitlement service."""

from __future__ import annotations

from entitlement_api.routers import billing, emails, health, retention

__all__ = [
    "billing",
    "emails",
    "health",
    "retention",
]
