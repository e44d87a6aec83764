"""FastAPI dependency injection for settings, database sessions and provider clients."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from typing import Annotated

from entitlement_engine.config import EngineSettings, load_engine_settings
from entitlement_engine.lifecycle.gate import can_access
from entitlement_engine.state.database import build_session_factory, get_engine, session_scope
from entitlement_engine.state.repository import EntitlementRepository
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from entitlement_api.config import APISettings, load_api_settings
from entitlement_api.services.billing_provider import StripeBillingProvider
from entitlement_api.services.email_client import ResendEmailClient
from entitlement_api.services.messaging import TwilioSmsClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: EngineSettings | None = None


def get_settings() -> APISettings:
    """Process-wide :class:`APISettings`, loaded on first use."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> EngineSettings:
    """Process-wide :class:`EngineSettings`, loaded on first use."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_engine_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[EngineSettings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Open the store engine for *settings* and keep it for the process."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = build_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Close pooled connections; called from the lifespan shutdown."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for callers that own their transactions.

    The webhook endpoint commits per event and the retention scheduler per
    tenant, so neither can share the request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError("Entitlement store is not open; init_engine() must run at startup")
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    async with session_scope(get_session_factory()) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Billing provider
# ---------------------------------------------------------------------------

_billing_provider: StripeBillingProvider | None = None


def init_billing_provider(settings: APISettings) -> StripeBillingProvider:
    """Create and cache the global :class:`StripeBillingProvider`."""
    global _billing_provider  # noqa: PLW0603
    _billing_provider = StripeBillingProvider(settings)
    return _billing_provider


def get_optional_billing_provider() -> StripeBillingProvider | None:
    """Return the cached provider, or ``None`` when billing is disabled."""
    return _billing_provider


def get_billing_provider(
    provider: StripeBillingProvider | None = Depends(get_optional_billing_provider),
) -> StripeBillingProvider:
    """Return the cached provider, or 404 when billing is disabled."""
    if provider is None:
        raise HTTPException(status_code=404, detail="Billing is not enabled")
    return provider


BillingProviderDep = Annotated[StripeBillingProvider, Depends(get_billing_provider)]
OptionalBillingProviderDep = Annotated[StripeBillingProvider | None, Depends(get_optional_billing_provider)]

# ---------------------------------------------------------------------------
# SMS client
# ---------------------------------------------------------------------------

_sms_client: TwilioSmsClient | None = None


def init_sms_client(settings: APISettings) -> TwilioSmsClient:
    """Create and cache the global :class:`TwilioSmsClient`."""
    global _sms_client  # noqa: PLW0603
    _sms_client = TwilioSmsClient.from_settings(settings)
    if not _sms_client.configured:
        logger.warning("Twilio credentials missing; retention sends will be recorded as failed")
    return _sms_client


async def dispose_sms_client() -> None:
    """Close the SMS client's underlying HTTP pool."""
    global _sms_client  # noqa: PLW0603
    if _sms_client is not None:
        await _sms_client.close()
        _sms_client = None


def get_sms_client() -> TwilioSmsClient:
    """Return the cached :class:`TwilioSmsClient` singleton."""
    if _sms_client is None:
        raise RuntimeError(
            "SMS client has not been initialised. Ensure init_sms_client() is called during application startup."
        )
    return _sms_client


SmsClientDep = Annotated[TwilioSmsClient, Depends(get_sms_client)]

# ---------------------------------------------------------------------------
# Email client
# ---------------------------------------------------------------------------

_email_client: ResendEmailClient | None = None


def init_email_client(settings: APISettings) -> ResendEmailClient:
    """Create and cache the global :class:`ResendEmailClient`."""
    global _email_client  # noqa: PLW0603
    _email_client = ResendEmailClient.from_settings(settings)
    if not _email_client.configured:
        logger.warning("Resend API key missing; drip emails will fail and be retried")
    return _email_client


async def dispose_email_client() -> None:
    global _email_client  # noqa: PLW0603
    if _email_client is not None:
        await _email_client.close()
        _email_client = None


def get_email_client() -> ResendEmailClient:
    """Return the cached :class:`ResendEmailClient` singleton."""
    if _email_client is None:
        raise RuntimeError(
            "Email client has not been initialised. Ensure init_email_client() is called during application startup."
        )
    return _email_client


EmailClientDep = Annotated[ResendEmailClient, Depends(get_email_client)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Tenant the session token was issued for."""
    tenant_id: str | None = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]

# ---------------------------------------------------------------------------
# Entitlement gating
# ---------------------------------------------------------------------------


def require_entitlement() -> Callable[..., None]:
    """Return a FastAPI dependency that enforces the feature gate.

    Reads the tenant's stored entitlement on every request and raises
    ``HTTPException(403)`` when :func:`can_access` denies it.

    This service mounts no gated routes of its own; the guard is exported
    for the dashboard routers (site publishing, bookings and the like)
    that import this package and include their routers in the same app.
    ``GET /billing/entitlement`` answers the same question without
    blocking.

    Usage in a downstream dashboard router::

        @router.post("/sites/publish")
        async def publish_site(
            ...,
            _gate: None = Depends(require_entitlement()),
        ) -> ...:
    """

    async def _gate(
        session: SessionDep,
        tenant_id: TenantDep,
        engine_settings: EngineSettingsDep,
    ) -> None:
        record = await EntitlementRepository(session).get(tenant_id)
        if not can_access(record, datetime.now(UTC), engine_settings.grace_days):
            phase = record.phase if record is not None else "none"
            raise HTTPException(
                status_code=403,
                detail=f"An active subscription is required (current status: '{phase}').",
            )

    return _gate  # type: ignore[return-value]
