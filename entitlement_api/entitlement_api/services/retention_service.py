"""Retention outreach for un-activated trial tenants.

Holds the per-tenant send logic used by both the scheduled batch and the
admin endpoints.  Every attempt is recorded, whether delivery succeeded or
not, and any record for a step counts as sent for future runs.  A failed
step is therefore retried only after an admin resets the tenant.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from entitlement_engine.config import EngineSettings
from entitlement_engine.lifecycle.clock import days_since, trial_start
from entitlement_engine.retention.policy import (
    RetentionStep,
    build_steps,
    first_name,
    is_activated,
    next_unsent_step,
    render_message,
    select_next_step,
)
from entitlement_engine.state.repository import RetentionSendRepository, TenantRepository
from entitlement_engine.state.tables import RetentionSendTable, TenantTable
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_api.config import APISettings
from entitlement_api.services.messaging import DeliveryResult, TwilioSmsClient

logger = logging.getLogger(__name__)


class RetentionService:
    """Retention operations within one database session.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    settings:
        API settings (activation link).
    engine_settings:
        Engine settings (trial length, step day offsets).
    messenger:
        SMS collaborator.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        engine_settings: EngineSettings,
        messenger: TwilioSmsClient,
    ) -> None:
        self._settings = settings
        self._engine_settings = engine_settings
        self._messenger = messenger
        self._tenants = TenantRepository(session)
        self._sends = RetentionSendRepository(session)
        self._steps: tuple[RetentionStep, ...] = build_steps(engine_settings.retention_day_offsets)

    @property
    def steps(self) -> tuple[RetentionStep, ...]:
        return self._steps

    def days_in_trial(self, trial_ends_at: datetime | None, now: datetime) -> int:
        """Whole days elapsed since the trial started."""
        return days_since(trial_start(trial_ends_at, self._engine_settings.trial_length_days), now)

    async def process_tenant(
        self,
        tenant_id: str,
        *,
        phone: str,
        business_name: str | None,
        trial_ends_at: datetime | None,
        now: datetime,
    ) -> str:
        """Send the tenant's next due step, if any.

        Returns
        -------
        str
            ``"sent"``, ``"failed"`` (attempt recorded as failed) or
            ``"skipped"`` (no step due).
        """
        sent_steps = await self._sends.sent_steps(tenant_id)
        step = select_next_step(self.days_in_trial(trial_ends_at, now), sent_steps, self._steps)
        if step is None:
            return "skipped"

        result = await self._deliver(tenant_id, step, phone=phone, business_name=business_name, now=now)
        return "sent" if result.succeeded else "failed"

    # -- Admin operations ----------------------------------------------------

    async def list_trial_tenants(self, now: datetime) -> list[dict[str, Any]]:
        """Trial tenants with their retention progress and send history."""
        rows = await self._tenants.list_trialing()
        history = await self._sends.list_for_tenants(tenant.tenant_id for tenant, _ in rows)

        result: list[dict[str, Any]] = []
        for tenant, entitlement in rows:
            events = history.get(tenant.tenant_id, [])
            started = trial_start(entitlement.trial_ends_at, self._engine_settings.trial_length_days)
            result.append(
                {
                    "tenant_id": tenant.tenant_id,
                    "business_name": tenant.business_name,
                    "phone": tenant.phone,
                    "sms_consent": tenant.sms_consent,
                    "activated": is_activated(tenant.onboarding_complete, tenant.site_slug),
                    "trial_start": started,
                    "trial_ends_at": entitlement.trial_ends_at,
                    "days_in_trial": self.days_in_trial(entitlement.trial_ends_at, now),
                    "retention_step": max((e.step for e in events), default=0),
                    "last_sent_at": events[-1].sent_at if events else None,
                    "events": [_event_dict(e) for e in events],
                }
            )
        return result

    async def send_step(self, tenant_id: str, step_number: int, now: datetime) -> dict[str, Any]:
        """Manually send a specific step, regardless of thresholds or history.

        Raises
        ------
        LookupError
            If the tenant does not exist.
        ValueError
            If the step number is out of range or the tenant has no phone.
        """
        step = next((s for s in self._steps if s.number == step_number), None)
        if step is None:
            raise ValueError(f"Retention step must be between 1 and {len(self._steps)}, got {step_number}")
        return await self._manual_send(tenant_id, step, now)

    async def send_next(self, tenant_id: str, now: datetime) -> dict[str, Any]:
        """Manually send the lowest step with no record yet.

        Raises
        ------
        LookupError
            If the tenant does not exist.
        ValueError
            If every step has already been sent or the tenant has no phone.
        """
        step = next_unsent_step(await self._sends.sent_steps(tenant_id), self._steps)
        if step is None:
            raise ValueError("All retention steps have already been sent")
        return await self._manual_send(tenant_id, step, now)

    async def reset(self, tenant_id: str) -> dict[str, Any]:
        """Delete the tenant's send records so the scheduler starts over."""
        deleted = await self._sends.delete_for_tenant(tenant_id)
        return {"tenant_id": tenant_id, "deleted": deleted}

    # -- Internal helpers ----------------------------------------------------

    async def _manual_send(self, tenant_id: str, step: RetentionStep, now: datetime) -> dict[str, Any]:
        tenant = await self._require_tenant(tenant_id)
        if not tenant.phone:
            raise ValueError(f"Tenant {tenant_id} has no phone number")
        result = await self._deliver(
            tenant_id,
            step,
            phone=tenant.phone,
            business_name=tenant.business_name,
            now=now,
            is_manual=True,
        )
        return {
            "tenant_id": tenant_id,
            "step": step.number,
            "succeeded": result.succeeded,
            "error": result.error,
        }

    async def _require_tenant(self, tenant_id: str) -> TenantTable:
        tenant = await self._tenants.get(tenant_id)
        if tenant is None:
            raise LookupError(f"Tenant {tenant_id} not found")
        return tenant

    async def _deliver(
        self,
        tenant_id: str,
        step: RetentionStep,
        *,
        phone: str,
        business_name: str | None,
        now: datetime,
        is_manual: bool = False,
    ) -> DeliveryResult:
        body = render_message(
            step.template,
            name=first_name(business_name),
            activation_link=self._settings.activation_link,
        )
        result = await self._messenger.send(phone, body)
        await self._sends.record(
            tenant_id,
            step=step.number,
            destination=phone,
            body=body,
            succeeded=result.succeeded,
            error_detail=result.error,
            is_manual=is_manual,
            sent_at=now,
        )
        logger.info(
            "Retention step %d for tenant %s: %s%s",
            step.number,
            tenant_id,
            "sent" if result.succeeded else "failed",
            " (manual)" if is_manual else "",
        )
        return result


def _event_dict(row: RetentionSendTable) -> dict[str, Any]:
    return {
        "step": row.step,
        "sent_at": row.sent_at,
        "succeeded": row.succeeded,
        "error_detail": row.error_detail,
        "is_manual": row.is_manual,
    }
