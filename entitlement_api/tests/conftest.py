"""Shared fixtures for entitlement API tests.

Provides an in-memory SQLite entitlement store, a mock billing provider,
mock SMS and email clients, session-token factories, and an httpx client
bound to the app with dependency overrides.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set SESSION_SECRET BEFORE importing application modules so the
# AuthenticationMiddleware validates tokens with a deterministic secret
# instead of generating a random one.
_TEST_SESSION_SECRET = "test-secret-key-for-entitlement-tests"
os.environ.setdefault("SESSION_SECRET", _TEST_SESSION_SECRET)

from entitlement_engine.config import EngineSettings
from entitlement_engine.models.entitlement import EntitlementSnapshot, EntitlementUpdate
from entitlement_engine.state.repository import EntitlementRepository, TenantRepository
from entitlement_engine.state.sqlite_adapter import create_local_tables, get_local_engine

from entitlement_api.config import APISettings
from entitlement_api.dependencies import (
    get_db_session,
    get_email_client,
    get_engine_settings,
    get_optional_billing_provider,
    get_session_factory,
    get_settings,
    get_sms_client,
)
from entitlement_api.main import create_app
from entitlement_api.security import SessionTokenManager
from entitlement_api.services.billing_provider import StripeBillingProvider
from entitlement_api.services.email_client import ResendEmailClient
from entitlement_api.services.messaging import DeliveryResult, TwilioSmsClient

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def _make_token(tenant_id: str = "t-owner", role: str = "owner", ttl_seconds: int | None = None) -> str:
    manager = SessionTokenManager(SecretStr(_TEST_SESSION_SECRET))
    return manager.issue_token(tenant_id, sub="test-user", role=role, ttl_seconds=ttl_seconds)


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return a factory for ``Authorization`` headers with a given tenant and role."""

    def _headers(tenant_id: str = "t-owner", role: str = "owner") -> dict[str, str]:
        return {"Authorization": f"Bearer {_make_token(tenant_id, role)}"}

    return _headers


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        billing_enabled=True,
        stripe_secret_key=SecretStr("sk_test_xxx"),
        stripe_webhook_secret=SecretStr("whsec_test_xxx"),
        stripe_price_id_monthly="price_monthly",
        stripe_price_id_annual="price_annual",
        twilio_account_sid="AC123",
        twilio_auth_token=SecretStr("twilio-token"),
        twilio_from_number="+15550000000",
        retention_enabled=True,
        activation_link="https://app.example.com/dashboard/website",
        resend_api_key=SecretStr("re_test_xxx"),
        app_url="https://app.example.com",
    )


@pytest.fixture()
def engine_settings() -> EngineSettings:
    return EngineSettings(trial_length_days=14, grace_days=3, retention_day_offsets=[9, 11, 13])


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_engine() -> AsyncIterator[AsyncEngine]:
    """In-memory SQLite engine with every table created."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture()
def seed_tenant(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[None]]:
    """Return a coroutine that inserts a tenant and, optionally, billing state."""

    async def _seed(
        tenant_id: str,
        *,
        update: EntitlementUpdate | None = None,
        **profile: Any,
    ) -> None:
        async with session_factory() as session:
            await TenantRepository(session).create(tenant_id, **profile)
            if update is not None:
                await EntitlementRepository(session).upsert_from_webhook(tenant_id, update)
            await session.commit()

    return _seed


@pytest.fixture()
def read_snapshot(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Awaitable[EntitlementSnapshot]]:
    """Return a coroutine that reads a tenant's stored state in a fresh session."""

    async def _read(tenant_id: str) -> EntitlementSnapshot:
        async with session_factory() as session:
            return await EntitlementRepository(session).get_snapshot(tenant_id)

    return _read


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_provider() -> MagicMock:
    """Return a mock StripeBillingProvider.

    By default no customer exists and every customer has no subscriptions.
    Tests override individual return values as needed.
    """
    provider = MagicMock(spec=StripeBillingProvider)
    provider.construct_event = MagicMock()
    provider.retrieve_customer = AsyncMock(return_value=None)
    provider.find_customer_by_email = AsyncMock(return_value=None)
    provider.list_subscriptions = AsyncMock(return_value=[])
    provider.cancel_subscription = AsyncMock(return_value={})
    return provider


@pytest.fixture()
def mock_sms() -> MagicMock:
    """Return a mock TwilioSmsClient whose sends succeed."""
    sms = MagicMock(spec=TwilioSmsClient)
    sms.configured = True
    sms.send = AsyncMock(return_value=DeliveryResult(succeeded=True, provider_ref="SM123"))
    sms.close = AsyncMock()
    return sms


@pytest.fixture()
def mock_mailer() -> MagicMock:
    """Return a mock ResendEmailClient whose sends succeed."""
    mailer = MagicMock(spec=ResendEmailClient)
    mailer.configured = True
    mailer.send = AsyncMock(return_value=DeliveryResult(succeeded=True, provider_ref="em_123"))
    mailer.close = AsyncMock()
    return mailer


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    engine_settings: EngineSettings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_provider: MagicMock,
    mock_sms: MagicMock,
    mock_mailer: MagicMock,
):
    """Create a FastAPI app wired to the in-memory store and mock collaborators."""
    application = create_app()

    async def _override_session():
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_optional_billing_provider] = lambda: mock_provider
    application.dependency_overrides[get_sms_client] = lambda: mock_sms
    application.dependency_overrides[get_email_client] = lambda: mock_mailer
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncIterator[AsyncClient]:
    """Yield an async httpx client bound to the test app.

    Requests carry an owner token for tenant ``t-owner`` unless a test
    passes its own ``Authorization`` header.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {_make_token()}"},
    ) as ac:
        yield ac
