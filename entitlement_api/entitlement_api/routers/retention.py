"""Admin endpoints for the retention SMS sequence and lifecycle email drips.

Lists trial tenants with their send history, triggers an SMS or drip pass
on demand, sends steps manually and resets a tenant's history so the
scheduler can retry.  Every endpoint requires ``manage:retention``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException

from entitlement_api.dependencies import (
    EmailClientDep,
    EngineSettingsDep,
    SessionDep,
    SessionFactoryDep,
    SettingsDep,
    SmsClientDep,
)
from entitlement_api.middleware.rbac import Permission, Role, require_permission
from entitlement_api.schemas import (
    RetentionListResponse,
    RetentionResetResponse,
    RetentionRunResponse,
    RetentionSendRequest,
    RetentionSendResponse,
    RetentionTenantResponse,
)
from entitlement_api.services.retention_scheduler import RetentionScheduler
from entitlement_api.services.retention_service import RetentionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/retention", tags=["retention"])


@router.get("", response_model=RetentionListResponse)
async def list_retention(
    session: SessionDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    sms: SmsClientDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_RETENTION)),
) -> RetentionListResponse:
    """Return every trial tenant with retention progress and history."""
    service = RetentionService(session, settings, engine_settings, sms)
    rows = await service.list_trial_tenants(datetime.now(UTC))
    return RetentionListResponse(
        tenants=[RetentionTenantResponse(**row) for row in rows],
        total=len(rows),
    )


@router.post("/run", response_model=RetentionRunResponse)
async def run_retention(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    sms: SmsClientDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_RETENTION)),
) -> RetentionRunResponse:
    """Run one scheduler pass immediately."""
    scheduler = RetentionScheduler(session_factory, settings, engine_settings, sms)
    summary = await scheduler.run_once()
    return RetentionRunResponse(**summary)


@router.post("/emails/run", response_model=RetentionRunResponse)
async def run_email_drips(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    sms: SmsClientDep,
    mailer: EmailClientDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_RETENTION)),
) -> RetentionRunResponse:
    """Run one lifecycle email drip pass immediately."""
    scheduler = RetentionScheduler(session_factory, settings, engine_settings, sms, mailer=mailer)
    summary = await scheduler.run_email_drips()
    return RetentionRunResponse(**summary)


@router.post("/{tenant_id}/send", response_model=RetentionSendResponse)
async def send_retention_step(
    tenant_id: str,
    body: RetentionSendRequest,
    session: SessionDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    sms: SmsClientDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_RETENTION)),
) -> RetentionSendResponse:
    """Send a specific step now, ignoring thresholds and history."""
    service = RetentionService(session, settings, engine_settings, sms)
    try:
        result = await service.send_step(tenant_id, body.step, datetime.now(UTC))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return RetentionSendResponse(**result)


@router.post("/{tenant_id}/send-next", response_model=RetentionSendResponse)
async def send_next_retention_step(
    tenant_id: str,
    session: SessionDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    sms: SmsClientDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_RETENTION)),
) -> RetentionSendResponse:
    """Send the lowest step that has no record yet."""
    service = RetentionService(session, settings, engine_settings, sms)
    try:
        result = await service.send_next(tenant_id, datetime.now(UTC))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return RetentionSendResponse(**result)


@router.delete("/{tenant_id}", response_model=RetentionResetResponse)
async def reset_retention(
    tenant_id: str,
    session: SessionDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    sms: SmsClientDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_RETENTION)),
) -> RetentionResetResponse:
    """Delete the tenant's send records so the scheduler starts over."""
    service = RetentionService(session, settings, engine_settings, sms)
    return RetentionResetResponse(**await service.reset(tenant_id))
