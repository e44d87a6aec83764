"""SQLAlchemy 2.0 ORM table definitions for the entitlement store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware ``DateTime`` that always reads back as UTC-aware.

    PostgreSQL preserves the offset natively.  SQLite stores naive strings,
    so values loaded from it are tagged with UTC here.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all entitlement tables."""


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """Account-side profile data the engine reads.

    Populated by the signup and onboarding flows.  The engine reads it for
    identity fallback and retention targeting, and writes only the email
    opt-out flag.
    """

    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    business_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    onboarding_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    site_slug: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sms_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unsubscribed_from_emails: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_tenants_email", "email"),)


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementTable(Base):
    """Billing state per tenant: the Tenant Billing Record.

    One row per tenant.  Written only by the webhook and poll reconcilers;
    ``updated_at`` is informational and never used for ordering.
    """

    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    billing_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phase: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    plan: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    period_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_entitlements_customer_ref", "billing_customer_ref"),
        Index("ix_entitlements_phase", "phase"),
    )


# ---------------------------------------------------------------------------
# Billing event ledger
# ---------------------------------------------------------------------------


class BillingEventTable(Base):
    """Provider event ids already applied, for redelivery short-circuiting."""

    __tablename__ = "billing_events"

    event_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_billing_events_tenant", "tenant_id"),)


# ---------------------------------------------------------------------------
# Retention sends
# ---------------------------------------------------------------------------


class RetentionSendTable(Base):
    """Append-only log of retention message attempts, successful or not."""

    __tablename__ = "retention_sends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    destination: Mapped[str] = mapped_column(String(32), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_retention_sends_tenant_step", "tenant_id", "step"),
        Index("ix_retention_sends_sent_at", "sent_at"),
    )


# ---------------------------------------------------------------------------
# Drip email sends
# ---------------------------------------------------------------------------


class EmailSendTable(Base):
    """Delivered drip emails; one row per tenant and email type."""

    __tablename__ = "email_sends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email_type: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "email_type", name="uq_email_sends_tenant_type"),)
