"""Webhook reconciler: apply billing provider events to the entitlement store.

Each verified event is parsed into a variant, matched to a tenant, turned
into a partial :class:`EntitlementUpdate` and written field by field.
Writes are idempotent, so redelivered and out-of-order events are safe to
apply; the event ledger only short-circuits exact redeliveries.

Lifecycle transitions::

    none -> trialing -> active <-> past_due -> canceled
            trialing -> canceled
                        active -> canceled

Event timestamps are not compared with stored state.  An old event
delivered late overwrites newer state until the next poll corrects it.
"""

from __future__ import annotations

import logging
from typing import Any

from entitlement_engine.config import EngineSettings
from entitlement_engine.errors import BillingProviderError, UnsupportedEventError
from entitlement_engine.models.entitlement import (
    TERMINAL_SUBSCRIPTION_STATUSES,
    EntitlementUpdate,
    Phase,
)
from entitlement_engine.models.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnknownEvent,
    parse_billing_event,
)
from entitlement_engine.state.repository import (
    BillingEventRepository,
    EntitlementRepository,
    TenantRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_api.config import APISettings, PlatformEnv
from entitlement_api.services.billing_provider import StripeBillingProvider, plan_for_price

logger = logging.getLogger(__name__)


class WebhookReconciler:
    """Apply one billing event at a time within the caller's session.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    settings:
        API settings (price ids for plan mapping).
    engine_settings:
        Engine settings (strict unknown-event handling).  When
        ``strict_event_types`` is unset, strict mode follows the platform
        environment: on in ``dev``, off in staging and production.
    provider:
        Billing provider used for the customer-email identity fallback.
        When ``None`` that fallback is skipped.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        engine_settings: EngineSettings,
        provider: StripeBillingProvider | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._engine_settings = engine_settings
        self._provider = provider
        self._entitlements = EntitlementRepository(session)
        self._tenants = TenantRepository(session)
        self._ledger = BillingEventRepository(session)

    async def handle(self, envelope: dict[str, Any]) -> dict[str, Any]:
        """Parse and apply a verified event envelope.

        Returns
        -------
        dict
            ``status`` is one of ``processed``, ``duplicate`` or ``ignored``
            (with a ``reason``).

        Raises
        ------
        EventParseError
            If the envelope is malformed.
        UnsupportedEventError
            If the event type is unknown and strict mode is enabled.
        """
        event = parse_billing_event(envelope)

        if await self._ledger.is_processed(event.event_id):
            logger.info("Duplicate billing event %s (%s); skipping", event.event_id, event.event_type)
            return {"status": "duplicate", "event_id": event.event_id}

        if isinstance(event, UnknownEvent):
            if self.strict_event_types:
                raise UnsupportedEventError(event.event_type)
            logger.warning("Unhandled billing event type %s (%s)", event.event_type, event.event_id)
            return {"status": "ignored", "reason": "unsupported_event_type", "event_type": event.event_type}

        tenant_id = await self.resolve_tenant(event)
        if tenant_id is None:
            logger.warning(
                "Billing event %s type=%s has no resolvable tenant (customer=%s); skipping",
                event.event_id,
                event.event_type,
                event.customer_ref,
            )
            return {"status": "ignored", "reason": "unknown_tenant"}

        update = self._transition(event)
        if update is None:
            await self._ledger.record(event.event_id, event.event_type, tenant_id)
            return {"status": "ignored", "reason": "unhandled_status", "tenant_id": tenant_id}

        row = await self._entitlements.upsert_from_webhook(tenant_id, update)
        await self._ledger.record(event.event_id, event.event_type, tenant_id)
        logger.info(
            "Applied billing event %s type=%s tenant=%s phase=%s",
            event.event_id,
            event.event_type,
            tenant_id,
            row.phase,
        )
        return {
            "status": "processed",
            "event_type": event.event_type,
            "tenant_id": tenant_id,
            "phase": row.phase,
        }

    @property
    def strict_event_types(self) -> bool:
        """Whether unknown event types raise instead of being acknowledged."""
        configured = self._engine_settings.strict_event_types
        if configured is None:
            return self._settings.platform_env == PlatformEnv.DEV
        return configured

    # -- Identity resolution -------------------------------------------------

    async def resolve_tenant(self, event: BillingEvent) -> str | None:
        """Map an event to a tenant id.

        Order: tenant id in payload metadata, then the stored
        customer -> tenant mapping, then the billing customer's email
        matched against tenant profiles.  A metadata tenant id that names
        no known tenant is skipped.  A match found by email is persisted
        as the customer mapping.
        """
        if event.metadata_tenant_id:
            if await self._tenants.get(event.metadata_tenant_id) is not None:
                return event.metadata_tenant_id
            logger.warning(
                "Billing event %s names unknown tenant %s in metadata; falling back to customer lookup",
                event.event_id,
                event.metadata_tenant_id,
            )

        if event.customer_ref:
            tenant_id = await self._entitlements.find_tenant_by_customer(event.customer_ref)
            if tenant_id is not None:
                return tenant_id

        email = event.customer_email
        if not email and event.customer_ref and self._provider is not None:
            try:
                customer = await self._provider.retrieve_customer(event.customer_ref)
            except BillingProviderError:
                logger.warning(
                    "Customer lookup failed for %s while resolving event %s",
                    event.customer_ref,
                    event.event_id,
                    exc_info=True,
                )
                return None
            email = (customer or {}).get("email")

        if not email:
            return None

        tenant = await self._tenants.find_by_email(email)
        if tenant is None:
            return None
        if event.customer_ref:
            await self._entitlements.bind_customer(tenant.tenant_id, event.customer_ref)
        return tenant.tenant_id

    # -- Transitions ---------------------------------------------------------

    def _transition(self, event: BillingEvent) -> EntitlementUpdate | None:
        """Return the partial update an event implies, or ``None`` to ignore it."""
        fields: dict[str, Any]
        if isinstance(event, CheckoutCompleted):
            fields = {}
        elif isinstance(event, SubscriptionChanged):
            subscription_fields = self._subscription_fields(event)
            if subscription_fields is None:
                return None
            fields = subscription_fields
        elif isinstance(event, SubscriptionDeleted):
            fields = {"phase": Phase.CANCELED, "billing_subscription_ref": None, "cancel_at_period_end": False}
        elif isinstance(event, InvoicePaymentSucceeded):
            fields = {"phase": Phase.ACTIVE}
        elif isinstance(event, InvoicePaymentFailed):
            fields = {"phase": Phase.PAST_DUE}
        else:
            return None

        if event.customer_ref:
            fields["billing_customer_ref"] = event.customer_ref
        if not fields:
            return None
        return EntitlementUpdate(**fields)

    def _subscription_fields(self, event: SubscriptionChanged) -> dict[str, Any] | None:
        status = event.status
        if status == "trialing":
            fields: dict[str, Any] = {
                "phase": Phase.TRIALING,
                "billing_subscription_ref": event.subscription_ref,
                "trial_ends_at": event.trial_ends_at,
                "period_ends_at": event.period_ends_at,
                "cancel_at_period_end": event.cancel_at_period_end,
            }
        elif status == "active":
            fields = {
                "phase": Phase.ACTIVE,
                "billing_subscription_ref": event.subscription_ref,
                "period_ends_at": event.period_ends_at,
                "cancel_at_period_end": event.cancel_at_period_end,
            }
        elif status == "past_due":
            # period_ends_at keeps its stored value while the grace clock runs.
            fields = {"phase": Phase.PAST_DUE, "billing_subscription_ref": event.subscription_ref}
        elif status in TERMINAL_SUBSCRIPTION_STATUSES:
            fields = {"phase": Phase.CANCELED}
        else:
            logger.info(
                "Ignoring subscription %s in status %s (event %s)",
                event.subscription_ref,
                status,
                event.event_id,
            )
            return None

        # Missing timestamps on the payload never clear stored ones.
        for name in ("trial_ends_at", "period_ends_at"):
            if name in fields and fields[name] is None:
                del fields[name]

        plan = plan_for_price(event.price_id, self._settings)
        if plan is not None and status != "past_due":
            fields["plan"] = plan
        return fields
