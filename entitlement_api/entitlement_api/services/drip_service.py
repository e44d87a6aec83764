"""Lifecycle email drips for one tenant.

Only successful deliveries are recorded.  A failed send leaves no trace,
so the next pass retries it for as long as its window stays open.
"""

from __future__ import annotations

import logging
from datetime import datetime

from entitlement_engine.retention.drips import DripEmail, DripRecipient, render_drip_email, select_drip_email
from entitlement_engine.retention.policy import first_name, is_activated
from entitlement_engine.state.repository import EmailSendRepository, TenantRepository
from entitlement_engine.state.tables import EntitlementTable, TenantTable
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_api.config import APISettings
from entitlement_api.services.email_client import ResendEmailClient

logger = logging.getLogger(__name__)


def recipient_for(tenant: TenantTable, entitlement: EntitlementTable) -> DripRecipient:
    """Collect the facts drip selection reads from the two stored rows."""
    return DripRecipient(
        phase=entitlement.phase,
        activated=is_activated(tenant.onboarding_complete, tenant.site_slug),
        signed_up_at=tenant.created_at,
        trial_ends_at=entitlement.trial_ends_at,
        period_ends_at=entitlement.period_ends_at,
    )


class DripEmailService:
    """Drip delivery within one database session.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    settings:
        API settings (dashboard URL used in links).
    mailer:
        Email collaborator.
    """

    def __init__(self, session: AsyncSession, settings: APISettings, mailer: ResendEmailClient) -> None:
        self._settings = settings
        self._mailer = mailer
        self._tenants = TenantRepository(session)
        self._sends = EmailSendRepository(session)

    async def due_email(self, tenant_id: str, recipient: DripRecipient, now: datetime) -> DripEmail | None:
        return select_drip_email(recipient, now, await self._sends.sent_types(tenant_id))

    async def process_tenant(
        self,
        tenant_id: str,
        *,
        email: str,
        business_name: str | None,
        recipient: DripRecipient,
        now: datetime,
    ) -> str:
        """Send the tenant's due drip email, if any.

        Returns
        -------
        str
            ``"sent"``, ``"failed"`` (nothing recorded) or ``"skipped"``.
        """
        tenant = await self._tenants.get(tenant_id)
        if tenant is None or tenant.unsubscribed_from_emails or not email:
            return "skipped"

        due = await self.due_email(tenant_id, recipient, now)
        if due is None:
            return "skipped"

        rendered = render_drip_email(due, name=first_name(business_name), app_url=self._settings.app_url)
        result = await self._mailer.send(email, rendered.subject, rendered.html)
        if not result.succeeded:
            logger.warning("Drip %s for tenant %s not delivered: %s", due.value, tenant_id, result.error)
            return "failed"

        await self._sends.record(
            tenant_id,
            due.value,
            recipient=email,
            provider_ref=result.provider_ref,
            sent_at=now,
        )
        logger.info("Drip %s sent to tenant %s", due.value, tenant_id)
        return "sent"

    async def unsubscribe(self, tenant_id: str) -> bool:
        """Opt the tenant out of every drip; ``False`` for an unknown tenant."""
        return await self._tenants.set_email_opt_out(tenant_id, True)
