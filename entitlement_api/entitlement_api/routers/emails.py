"""Lifecycle email preferences for the signed-in tenant.

Every drip email links to the dashboard settings page, which calls
``POST /emails/unsubscribe`` to opt the tenant out of all drips.
"""

from __future__ import annotations

import logging

from entitlement_engine.state.repository import TenantRepository
from fastapi import APIRouter, Depends, HTTPException

from entitlement_api.dependencies import SessionDep, TenantDep
from entitlement_api.middleware.rbac import Permission, Role, require_permission
from entitlement_api.schemas import EmailPreferenceResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emails", tags=["emails"])


@router.post("/unsubscribe", response_model=EmailPreferenceResponse)
async def unsubscribe(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_EMAILS)),
) -> EmailPreferenceResponse:
    """Stop every future drip email to the caller's tenant."""
    if not await TenantRepository(session).set_email_opt_out(tenant_id, True):
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    return EmailPreferenceResponse(tenant_id=tenant_id, unsubscribed=True)
