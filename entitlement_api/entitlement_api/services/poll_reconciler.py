"""Poll reconciler: overwrite stored billing state from the provider on demand.

Runs when the dashboard asks for a refresh (explicit button or tab focus).
The provider is authoritative here: the resulting snapshot replaces every
billing field in one write.  A provider failure raises before anything is
written, so the feature gate keeps working from the last-known-good state.
"""

from __future__ import annotations

import logging
from typing import Any

from entitlement_engine.models.entitlement import (
    LIVE_SUBSCRIPTION_STATUSES,
    TERMINAL_SUBSCRIPTION_STATUSES,
    EntitlementSnapshot,
    Phase,
    Plan,
)
from entitlement_engine.models.events import (
    parse_timestamp,
    subscription_period_end,
    subscription_price_id,
)
from entitlement_engine.state.repository import EntitlementRepository, TenantRepository
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_api.config import APISettings
from entitlement_api.services.billing_provider import StripeBillingProvider, plan_for_price

logger = logging.getLogger(__name__)


def select_subscription(subscriptions: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Pick the subscription that defines the tenant's state.

    The first live subscription (trialing, active or past_due) wins, in
    provider order.  Otherwise the first terminal one, so a churned tenant
    reads as canceled rather than as never subscribed.
    """
    for sub in subscriptions:
        if sub.get("status") in LIVE_SUBSCRIPTION_STATUSES:
            return sub
    for sub in subscriptions:
        if sub.get("status") in TERMINAL_SUBSCRIPTION_STATUSES:
            return sub
    return None


class PollReconciler:
    """Query the billing provider and overwrite one tenant's stored state.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    settings:
        API settings (price ids for plan mapping).
    provider:
        Billing provider collaborator.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        provider: StripeBillingProvider,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._entitlements = EntitlementRepository(session)
        self._tenants = TenantRepository(session)

    async def refresh(self, tenant_id: str) -> EntitlementSnapshot:
        """Fetch authoritative state for *tenant_id* and persist it.

        Raises
        ------
        BillingProviderError
            If the provider cannot be reached or times out.  Nothing is
            written in that case.
        """
        customer = await self._find_customer(tenant_id)
        if customer is None:
            logger.info("No billing customer for tenant %s; clearing billing state", tenant_id)
            snapshot = EntitlementSnapshot()
        else:
            subscriptions = await self._provider.list_subscriptions(customer["id"])
            snapshot = self.build_snapshot(customer["id"], select_subscription(subscriptions))

        await self._entitlements.overwrite_from_poll(tenant_id, snapshot)
        logger.info(
            "Poll refresh for tenant %s: phase=%s plan=%s",
            tenant_id,
            snapshot.phase.value,
            snapshot.plan.value,
        )
        return snapshot

    async def _find_customer(self, tenant_id: str) -> dict[str, Any] | None:
        """Stored customer ref first, then a lookup by the tenant's email."""
        stored = await self._entitlements.get(tenant_id)
        if stored is not None and stored.billing_customer_ref:
            customer = await self._provider.retrieve_customer(stored.billing_customer_ref)
            if customer is not None:
                return customer

        tenant = await self._tenants.get(tenant_id)
        if tenant is None or not tenant.email:
            return None
        return await self._provider.find_customer_by_email(tenant.email)

    def build_snapshot(self, customer_ref: str, subscription: dict[str, Any] | None) -> EntitlementSnapshot:
        """Translate the selected provider subscription into a snapshot."""
        if subscription is None:
            return EntitlementSnapshot(billing_customer_ref=customer_ref)

        status = subscription.get("status")
        plan = plan_for_price(subscription_price_id(subscription), self._settings) or Plan.NONE
        trial_ends_at = parse_timestamp(subscription.get("trial_end"))

        if status in LIVE_SUBSCRIPTION_STATUSES:
            return EntitlementSnapshot(
                phase=Phase(status),
                plan=plan,
                billing_customer_ref=customer_ref,
                billing_subscription_ref=subscription.get("id"),
                trial_ends_at=trial_ends_at,
                period_ends_at=subscription_period_end(subscription),
                cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            )

        return EntitlementSnapshot(
            phase=Phase.CANCELED,
            plan=plan,
            billing_customer_ref=customer_ref,
            trial_ends_at=trial_ends_at,
            period_ends_at=subscription_period_end(subscription),
        )
