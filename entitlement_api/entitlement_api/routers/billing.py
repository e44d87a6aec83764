"""Billing endpoints: provider webhooks, poll refresh and the feature gate."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from entitlement_engine.errors import (
    BillingProviderError,
    EventParseError,
    UnsupportedEventError,
    WebhookSignatureError,
)
from entitlement_engine.lifecycle.gate import describe_access
from entitlement_engine.models.entitlement import Plan
from entitlement_engine.state.repository import EntitlementRepository
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_api.config import APISettings
from entitlement_api.dependencies import (
    BillingProviderDep,
    EngineSettingsDep,
    OptionalBillingProviderDep,
    SessionDep,
    SessionFactoryDep,
    SettingsDep,
    TenantDep,
)
from entitlement_api.middleware.rbac import Permission, Role, require_permission
from entitlement_api.schemas import (
    EntitlementResponse,
    SubscriptionStatusResponse,
    WebhookAckResponse,
)
from entitlement_api.services.billing_provider import StripeBillingProvider
from entitlement_api.services.poll_reconciler import PollReconciler
from entitlement_api.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks", response_model=WebhookAckResponse, response_model_exclude_none=True)
async def billing_webhook(
    request: Request,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    session_factory: SessionFactoryDep,
    provider: OptionalBillingProviderDep,
) -> dict[str, Any]:
    """Handle incoming billing provider events.

    This endpoint bypasses session authentication; the provider signature
    over the raw body is verified instead.  Unverifiable or malformed
    events are rejected with 400 and change nothing.  Events that cannot be
    matched to a tenant are acknowledged so the provider stops retrying.
    """
    if not settings.billing_enabled or provider is None:
        return {"status": "billing_disabled"}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        envelope = provider.construct_event(body, sig_header)
    except WebhookSignatureError as exc:
        logger.warning("Billing webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")
    except EventParseError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {exc}")

    async with session_factory() as session:
        reconciler = WebhookReconciler(session, settings, engine_settings, provider)
        try:
            result = await reconciler.handle(envelope)
            await session.commit()
        except EventParseError as exc:
            await session.rollback()
            logger.warning("Rejected malformed billing event: %s", exc)
            raise HTTPException(status_code=400, detail=f"Invalid payload: {exc}")
        except UnsupportedEventError as exc:
            await session.rollback()
            raise HTTPException(status_code=400, detail=str(exc))
        except Exception:
            await session.rollback()
            logger.error(
                "Billing webhook processing failed for event %s",
                envelope.get("id", "unknown"),
                exc_info=True,
            )
            raise HTTPException(status_code=500, detail="Webhook processing failed")

    return result


# ---------------------------------------------------------------------------
# Poll refresh
# ---------------------------------------------------------------------------


async def _refresh(
    session: AsyncSession,
    settings: APISettings,
    provider: StripeBillingProvider,
    tenant_id: str,
) -> SubscriptionStatusResponse:
    reconciler = PollReconciler(session, settings, provider)
    try:
        snapshot = await reconciler.refresh(tenant_id)
    except BillingProviderError as exc:
        logger.warning("Poll refresh failed for tenant %s: %s", tenant_id, exc)
        raise HTTPException(status_code=502, detail="Billing provider unavailable; showing last known state")
    return SubscriptionStatusResponse(**snapshot.to_poll_response())


@router.post("/refresh", response_model=SubscriptionStatusResponse)
async def refresh_subscription(
    session: SessionDep,
    settings: SettingsDep,
    provider: BillingProviderDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.REFRESH_BILLING)),
) -> SubscriptionStatusResponse:
    """Re-read billing state from the provider and overwrite the stored copy."""
    return await _refresh(session, settings, provider, tenant_id)


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    provider: BillingProviderDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> SubscriptionStatusResponse:
    """Dashboard poll: same authoritative refresh as ``POST /refresh``."""
    return await _refresh(session, settings, provider, tenant_id)


# ---------------------------------------------------------------------------
# Feature gate
# ---------------------------------------------------------------------------


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    session: SessionDep,
    engine_settings: EngineSettingsDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> EntitlementResponse:
    """Evaluate the feature gate against stored state only."""
    record = await EntitlementRepository(session).get(tenant_id)
    summary = describe_access(record, datetime.now(UTC), engine_settings.grace_days)
    plan = record.plan if record is not None else Plan.NONE.value
    return EntitlementResponse(
        tenant_id=tenant_id,
        plan=plan if plan != Plan.NONE.value else None,
        cancel_at_period_end=bool(record is not None and record.cancel_at_period_end),
        **summary,
    )
