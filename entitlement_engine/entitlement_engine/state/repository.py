"""Repository classes providing access to the entitlement store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on ``session_scope``).

Tenant scoping is explicit: every method on a tenant-owned table takes the
tenant id and filters on it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, delete, func, not_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.lifecycle.clock import coerce_phase
from entitlement_engine.models.entitlement import (
    EntitlementSnapshot,
    EntitlementUpdate,
    Phase,
    Plan,
)
from entitlement_engine.state.tables import (
    BillingEventTable,
    EmailSendTable,
    EntitlementTable,
    RetentionSendTable,
    TenantTable,
)

logger = logging.getLogger(__name__)

# Every billing column a poll overwrites.
_SNAPSHOT_COLUMNS = (
    "phase",
    "plan",
    "billing_customer_ref",
    "billing_subscription_ref",
    "trial_ends_at",
    "period_ends_at",
    "cancel_at_period_end",
)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.  An empty list turns
        the statement into ``ON CONFLICT DO NOTHING``.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)

    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantRepository:
    """Read access to tenant profiles, plus creation for signup and tests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> TenantTable | None:
        """Fetch a tenant profile by id."""
        stmt = select(TenantTable).where(TenantTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> TenantTable | None:
        """Fetch the tenant owning *email* (case-insensitive).

        When several tenants share an address the oldest one wins, so the
        answer is stable across calls.
        """
        normalized = email.strip().lower()
        if not normalized:
            return None
        stmt = (
            select(TenantTable)
            .where(func.lower(TenantTable.email) == normalized)
            .order_by(TenantTable.created_at.asc(), TenantTable.tenant_id.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        tenant_id: str,
        *,
        email: str | None = None,
        business_name: str | None = None,
        phone: str | None = None,
        onboarding_complete: bool = False,
        site_slug: str | None = None,
        sms_consent: bool = False,
        unsubscribed_from_emails: bool = False,
        created_at: datetime | None = None,
    ) -> TenantTable:
        """Insert a tenant profile and its empty billing record.

        *created_at* is the signup time; it defaults to now.
        """
        row = TenantTable(
            tenant_id=tenant_id,
            email=email.strip().lower() if email else None,
            business_name=business_name,
            phone=phone,
            onboarding_complete=onboarding_complete,
            site_slug=site_slug,
            sms_consent=sms_consent,
            unsubscribed_from_emails=unsubscribed_from_emails,
            created_at=created_at or datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        await EntitlementRepository(self._session).ensure(tenant_id)
        return row

    async def list_retention_candidates(self, now: datetime) -> list[tuple[TenantTable, EntitlementTable]]:
        """Return trialing, consenting, reachable tenants that have not activated.

        A tenant qualifies when its phase is ``trialing``, the trial has not
        ended yet, it consented to SMS, it has a phone number, and it has not
        both completed onboarding and published a site slug.
        """
        activated = and_(
            TenantTable.onboarding_complete.is_(True),
            TenantTable.site_slug.is_not(None),
            TenantTable.site_slug != "",
        )
        stmt = (
            select(TenantTable, EntitlementTable)
            .join(EntitlementTable, EntitlementTable.tenant_id == TenantTable.tenant_id)
            .where(
                EntitlementTable.phase == Phase.TRIALING.value,
                EntitlementTable.trial_ends_at.is_not(None),
                EntitlementTable.trial_ends_at >= now,
                TenantTable.sms_consent.is_(True),
                TenantTable.phone.is_not(None),
                TenantTable.phone != "",
                not_(activated),
            )
            .order_by(TenantTable.tenant_id.asc())
        )
        result = await self._session.execute(stmt)
        return [(tenant, ent) for tenant, ent in result.all()]

    async def list_trialing(self) -> list[tuple[TenantTable, EntitlementTable]]:
        """Return every tenant currently in a free trial, newest trial first."""
        stmt = (
            select(TenantTable, EntitlementTable)
            .join(EntitlementTable, EntitlementTable.tenant_id == TenantTable.tenant_id)
            .where(EntitlementTable.phase == Phase.TRIALING.value)
            .order_by(EntitlementTable.trial_ends_at.desc(), TenantTable.tenant_id.asc())
        )
        result = await self._session.execute(stmt)
        return [(tenant, ent) for tenant, ent in result.all()]

    async def list_drip_candidates(self) -> list[tuple[TenantTable, EntitlementTable]]:
        """Return tenants with an email address who have not opted out of drips.

        Only phases that carry an email sequence are loaded: ``none``,
        ``trialing`` and ``canceled``.  Window selection happens in
        :mod:`entitlement_engine.retention.drips`.
        """
        stmt = (
            select(TenantTable, EntitlementTable)
            .join(EntitlementTable, EntitlementTable.tenant_id == TenantTable.tenant_id)
            .where(
                EntitlementTable.phase.in_([Phase.NONE.value, Phase.TRIALING.value, Phase.CANCELED.value]),
                TenantTable.unsubscribed_from_emails.is_(False),
                TenantTable.email.is_not(None),
                TenantTable.email != "",
            )
            .order_by(TenantTable.tenant_id.asc())
        )
        result = await self._session.execute(stmt)
        return [(tenant, ent) for tenant, ent in result.all()]

    async def set_email_opt_out(self, tenant_id: str, unsubscribed: bool = True) -> bool:
        """Set the drip opt-out flag; returns ``False`` for an unknown tenant."""
        stmt = (
            update(TenantTable)
            .where(TenantTable.tenant_id == tenant_id)
            .values(unsubscribed_from_emails=unsubscribed)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        if not result.rowcount:
            return False
        logger.info("Tenant %s %s drip emails", tenant_id, "unsubscribed from" if unsubscribed else "resubscribed to")
        return True


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """The Entitlement Store: per-tenant billing state.

    Two write paths exist.  :meth:`upsert_from_webhook` applies a partial
    update field by field; :meth:`overwrite_from_poll` replaces every
    billing field at once.  Neither compares timestamps: the last write
    wins.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure(self, tenant_id: str) -> None:
        """Create an empty ``none`` record for *tenant_id* if none exists."""
        await _dialect_upsert(
            self._session,
            EntitlementTable,
            values={
                "tenant_id": tenant_id,
                "phase": Phase.NONE.value,
                "plan": Plan.NONE.value,
                "cancel_at_period_end": False,
            },
            index_elements=["tenant_id"],
            update_columns=[],
        )
        await self._session.flush()

    async def get(self, tenant_id: str) -> EntitlementTable | None:
        """Fetch the billing record for *tenant_id*, or ``None``."""
        stmt = (
            select(EntitlementTable)
            .where(EntitlementTable.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_snapshot(self, tenant_id: str) -> EntitlementSnapshot:
        """Return the stored state as a snapshot (``none`` when no row exists)."""
        row = await self.get(tenant_id)
        if row is None:
            return EntitlementSnapshot()
        try:
            plan = Plan(row.plan)
        except ValueError:
            plan = Plan.NONE
        return EntitlementSnapshot(
            phase=coerce_phase(row.phase),
            plan=plan,
            billing_customer_ref=row.billing_customer_ref,
            billing_subscription_ref=row.billing_subscription_ref,
            trial_ends_at=row.trial_ends_at,
            period_ends_at=row.period_ends_at,
            cancel_at_period_end=row.cancel_at_period_end,
        )

    async def find_tenant_by_customer(self, customer_ref: str) -> str | None:
        """Return the tenant bound to *customer_ref*, if any."""
        stmt = (
            select(EntitlementTable.tenant_id)
            .where(EntitlementTable.billing_customer_ref == customer_ref)
            .order_by(EntitlementTable.id.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def bind_customer(self, tenant_id: str, customer_ref: str) -> None:
        """Persist the customer -> tenant mapping without touching the phase."""
        await self.upsert_from_webhook(tenant_id, EntitlementUpdate(billing_customer_ref=customer_ref))
        logger.info("Bound billing customer %s to tenant %s", customer_ref, tenant_id)

    async def upsert_from_webhook(self, tenant_id: str, update: EntitlementUpdate) -> EntitlementTable:
        """Apply a partial update, writing only the fields set on *update*.

        Creates the row when missing.  Fields absent from the update keep
        their stored value.
        """
        changes = update.changes()
        if not changes:
            await self.ensure(tenant_id)
            return await self.get(tenant_id)  # type: ignore[return-value]

        values: dict[str, Any] = {"tenant_id": tenant_id, **changes, "updated_at": datetime.now(UTC)}
        await _dialect_upsert(
            self._session,
            EntitlementTable,
            values=values,
            index_elements=["tenant_id"],
            update_columns=[*changes, "updated_at"],
        )
        await self._session.flush()
        logger.debug("Webhook update for tenant %s: %s", tenant_id, sorted(changes))
        return await self.get(tenant_id)  # type: ignore[return-value]

    async def overwrite_from_poll(self, tenant_id: str, snapshot: EntitlementSnapshot) -> EntitlementTable:
        """Replace every billing field with the values in *snapshot*."""
        values: dict[str, Any] = {
            "tenant_id": tenant_id,
            "phase": snapshot.phase.value,
            "plan": snapshot.plan.value,
            "billing_customer_ref": snapshot.billing_customer_ref,
            "billing_subscription_ref": snapshot.billing_subscription_ref,
            "trial_ends_at": snapshot.trial_ends_at,
            "period_ends_at": snapshot.period_ends_at,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "updated_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            EntitlementTable,
            values=values,
            index_elements=["tenant_id"],
            update_columns=[*_SNAPSHOT_COLUMNS, "updated_at"],
        )
        await self._session.flush()
        logger.debug("Poll overwrite for tenant %s: phase=%s", tenant_id, snapshot.phase.value)
        return await self.get(tenant_id)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Billing event ledger
# ---------------------------------------------------------------------------


class BillingEventRepository:
    """Ledger of applied provider event ids."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def is_processed(self, event_id: str) -> bool:
        stmt = select(BillingEventTable.event_id).where(BillingEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record(self, event_id: str, event_type: str, tenant_id: str | None) -> None:
        """Mark *event_id* as applied.  Recording an id twice is a no-op."""
        await _dialect_upsert(
            self._session,
            BillingEventTable,
            values={
                "event_id": event_id,
                "event_type": event_type,
                "tenant_id": tenant_id,
                "received_at": datetime.now(UTC),
            },
            index_elements=["event_id"],
            update_columns=[],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# Retention sends
# ---------------------------------------------------------------------------


class RetentionSendRepository:
    """Append-only retention send log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def sent_steps(self, tenant_id: str) -> set[int]:
        """Steps with any record for *tenant_id*, whether or not delivery succeeded."""
        stmt = select(RetentionSendTable.step).where(RetentionSendTable.tenant_id == tenant_id).distinct()
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def record(
        self,
        tenant_id: str,
        *,
        step: int,
        destination: str,
        succeeded: bool,
        error_detail: str | None = None,
        body: str | None = None,
        is_manual: bool = False,
        sent_at: datetime | None = None,
    ) -> RetentionSendTable:
        """Append one send attempt."""
        row = RetentionSendTable(
            tenant_id=tenant_id,
            step=step,
            destination=destination,
            body=body,
            succeeded=succeeded,
            error_detail=error_detail,
            is_manual=is_manual,
            sent_at=sent_at or datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_tenant(self, tenant_id: str) -> list[RetentionSendTable]:
        """Send history for one tenant, oldest first."""
        stmt = (
            select(RetentionSendTable)
            .where(RetentionSendTable.tenant_id == tenant_id)
            .order_by(RetentionSendTable.sent_at.asc(), RetentionSendTable.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_tenants(self, tenant_ids: Iterable[str]) -> dict[str, list[RetentionSendTable]]:
        """Send history grouped by tenant, oldest first within each tenant."""
        ids = list(tenant_ids)
        grouped: dict[str, list[RetentionSendTable]] = {tid: [] for tid in ids}
        if not ids:
            return grouped
        stmt = (
            select(RetentionSendTable)
            .where(RetentionSendTable.tenant_id.in_(ids))
            .order_by(RetentionSendTable.sent_at.asc(), RetentionSendTable.id.asc())
        )
        result = await self._session.execute(stmt)
        for row in result.scalars().all():
            grouped[row.tenant_id].append(row)
        return grouped

    async def delete_for_tenant(self, tenant_id: str) -> int:
        """Remove every send record for *tenant_id*; returns the count removed."""
        stmt = delete(RetentionSendTable).where(RetentionSendTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        deleted = result.rowcount or 0
        logger.info("Reset %d retention send record(s) for tenant %s", deleted, tenant_id)
        return deleted


# ---------------------------------------------------------------------------
# Drip email sends
# ---------------------------------------------------------------------------


class EmailSendRepository:
    """Log of delivered drip emails, at most one per tenant and email type."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def sent_types(self, tenant_id: str) -> set[str]:
        stmt = select(EmailSendTable.email_type).where(EmailSendTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def record(
        self,
        tenant_id: str,
        email_type: str,
        *,
        recipient: str,
        provider_ref: str | None = None,
        sent_at: datetime | None = None,
    ) -> bool:
        """Record a delivered email.

        Returns ``False`` when the type was already on record for the
        tenant; the existing row is kept.
        """
        result = await _dialect_upsert(
            self._session,
            EmailSendTable,
            values={
                "tenant_id": tenant_id,
                "email_type": email_type,
                "recipient": recipient,
                "provider_ref": provider_ref,
                "sent_at": sent_at or datetime.now(UTC),
            },
            index_elements=["tenant_id", "email_type"],
            update_columns=[],
        )
        await self._session.flush()
        return bool(result.rowcount)

    async def list_for_tenant(self, tenant_id: str) -> list[EmailSendTable]:
        """Delivered drips for one tenant, oldest first."""
        stmt = (
            select(EmailSendTable)
            .where(EmailSendTable.tenant_id == tenant_id)
            .order_by(EmailSendTable.sent_at.asc(), EmailSendTable.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
