"""Entitlement store persistence layer (PostgreSQL or SQLite)."""

from entitlement_engine.state.database import build_session_factory, get_engine, session_scope
from entitlement_engine.state.repository import (
    BillingEventRepository,
    EmailSendRepository,
    EntitlementRepository,
    RetentionSendRepository,
    TenantRepository,
)

__all__ = [
    "BillingEventRepository",
    "EmailSendRepository",
    "EntitlementRepository",
    "RetentionSendRepository",
    "TenantRepository",
    "build_session_factory",
    "get_engine",
    "session_scope",
]
