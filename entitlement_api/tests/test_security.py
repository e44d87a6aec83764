"""Tests for session tokens, RBAC, the auth middleware, request logging
and the entitlement gate dependency."""

from __future__ import annotations

import base64
import json
import logging
import sys
from datetime import UTC, datetime, timedelta

import pytest
from entitlement_engine.models.entitlement import EntitlementUpdate, Phase
from fastapi import APIRouter, Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

from entitlement_api.dependencies import (
    get_db_session,
    get_engine_settings,
    require_entitlement,
)
from entitlement_api.middleware.auth import AuthenticationMiddleware
from entitlement_api.middleware.json_formatter import JSONFormatter
from entitlement_api.middleware.logging import _access_record, _level_for
from entitlement_api.middleware.rbac import (
    Permission,
    Role,
    parse_role,
    role_has_permission,
)
from entitlement_api.security import SessionTokenManager, load_session_secret

_TEST_SESSION_SECRET = "test-secret-key-for-entitlement-tests"


def _make_token(tenant_id: str = "t-owner", role: str = "owner", ttl_seconds: int | None = None) -> str:
    manager = SessionTokenManager(SecretStr(_TEST_SESSION_SECRET))
    return manager.issue_token(tenant_id, sub="test-user", role=role, ttl_seconds=ttl_seconds)


@pytest.fixture()
def manager() -> SessionTokenManager:
    return SessionTokenManager(SecretStr(_TEST_SESSION_SECRET))


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class TestSessionTokens:
    def test_round_trip_claims(self, manager: SessionTokenManager) -> None:
        token = manager.issue_token("t-1", sub="owner@example.com", role="admin")

        claims = manager.validate_token(token)

        assert claims.tenant_id == "t-1"
        assert claims.sub == "owner@example.com"
        assert claims.role == "admin"
        assert claims.exp > claims.iat

    def test_other_secret_is_rejected(self, manager: SessionTokenManager) -> None:
        token = SessionTokenManager(SecretStr("another-secret")).issue_token("t-1", sub="u")
        with pytest.raises(PermissionError, match="signature"):
            manager.validate_token(token)

    def test_tampered_payload_is_rejected(self, manager: SessionTokenManager) -> None:
        prefix, payload, signature = manager.issue_token("t-1", sub="u", role="viewer").split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload))
        claims["role"] = "admin"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode("utf-8")).decode("ascii")

        with pytest.raises(PermissionError, match="signature"):
            manager.validate_token(f"{prefix}.{forged}.{signature}")

    def test_expired_token(self, manager: SessionTokenManager) -> None:
        token = manager.issue_token("t-1", sub="u", ttl_seconds=-60)
        with pytest.raises(PermissionError, match="expired"):
            manager.validate_token(token)

    @pytest.mark.parametrize("token", ["", "abc", "dsess.only-two", "bearer.x.y", "dsess.!!!.abc"])
    def test_malformed_tokens(self, manager: SessionTokenManager, token: str) -> None:
        with pytest.raises(PermissionError):
            manager.validate_token(token)

    def test_empty_secret_is_refused(self) -> None:
        with pytest.raises(ValueError):
            SessionTokenManager(SecretStr(""))


class TestLoadSessionSecret:
    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SESSION_SECRET", "from-env")
        assert load_session_secret("prod").get_secret_value() == "from-env"

    def test_generates_dev_secret(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SESSION_SECRET", raising=False)
        assert load_session_secret("dev").get_secret_value().startswith("dev-")

    def test_missing_outside_dev(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SESSION_SECRET", raising=False)
        with pytest.raises(RuntimeError, match="SESSION_SECRET"):
            load_session_secret("prod")


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


class TestRoles:
    def test_hierarchy(self) -> None:
        assert role_has_permission(Role.VIEWER, Permission.READ_BILLING)
        assert not role_has_permission(Role.VIEWER, Permission.REFRESH_BILLING)
        assert role_has_permission(Role.OWNER, Permission.REFRESH_BILLING)
        assert not role_has_permission(Role.OWNER, Permission.MANAGE_RETENTION)
        assert role_has_permission(Role.ADMIN, Permission.MANAGE_RETENTION)

    def test_parse_role_is_case_insensitive(self) -> None:
        assert parse_role(" Admin ") == Role.ADMIN

    def test_parse_unknown_role(self) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("root")


# ---------------------------------------------------------------------------
# Authentication middleware
# ---------------------------------------------------------------------------


class TestAuthenticationMiddleware:
    @pytest.mark.asyncio
    async def test_missing_header(self, app) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
            resp = await anonymous.get("/api/v1/billing/entitlement")

        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/entitlement", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/entitlement", headers={"Authorization": "Bearer dsess.x.y"})
        assert resp.status_code == 401
        assert resp.json()["detail"].startswith("Invalid token")

    @pytest.mark.asyncio
    async def test_expired_token_is_403(self, client: AsyncClient) -> None:
        token = _make_token(ttl_seconds=-60)
        resp = await client.get("/api/v1/billing/entitlement", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 403
        assert resp.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    async def test_tenant_comes_from_token(self, client: AsyncClient, auth_headers) -> None:
        resp = await client.get("/api/v1/billing/entitlement", headers=auth_headers("t-other", "viewer"))
        assert resp.json()["tenant_id"] == "t-other"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestLogging:
    def test_level_follows_status_and_health_paths(self) -> None:
        assert _level_for("/api/v1/health", 200) == logging.DEBUG
        assert _level_for("/api/v1/health", 503) == logging.ERROR
        assert _level_for("/api/v1/billing/refresh", 200) == logging.INFO
        assert _level_for("/api/v1/billing/webhook", 400) == logging.WARNING

    def test_access_record_omits_header_values(self) -> None:
        class _State:
            tenant_id = "t-1"

        class _Url:
            path = "/api/v1/billing/webhook"

        class _Req:
            method = "POST"
            url = _Url()
            state = _State()
            client = None
            headers = {"stripe-signature": "t=1,v1=abc", "user-agent": "Stripe/1.0"}

        record = _access_record(_Req(), 200, 0.0125, "req-1")  # type: ignore[arg-type]

        assert record["tenant_id"] == "t-1"
        assert record["duration_ms"] == 12.5
        assert record["user_agent"] == "Stripe/1.0"
        assert "t=1,v1=abc" not in json.dumps(record)

    def test_json_formatter_includes_extras(self) -> None:
        record = logging.LogRecord(
            name="entitlement_api.access",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="processed %s",
            args=("evt_1",),
            exc_info=None,
        )
        record.tenant_id = "t-1"
        record.event_type = "invoice.paid"

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "processed evt_1"
        assert payload["level"] == "INFO"
        assert payload["tenant_id"] == "t-1"
        assert payload["event_type"] == "invoice.paid"
        assert "exc_info" not in payload

    def test_json_formatter_renders_exceptions(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, exc_info)

        payload = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in payload["exc_info"]


# ---------------------------------------------------------------------------
# Entitlement gate dependency
# ---------------------------------------------------------------------------


@pytest.fixture()
def gated_app(session_factory, engine_settings) -> FastAPI:
    application = FastAPI()
    application.add_middleware(
        AuthenticationMiddleware,
        token_manager=SessionTokenManager(SecretStr(_TEST_SESSION_SECRET)),
    )

    @application.get("/feature")
    async def feature(_gate: None = Depends(require_entitlement())) -> dict[str, bool]:
        return {"ok": True}

    async def _session():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = _session
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    return application


class TestRequireEntitlement:
    async def _call(self, application: FastAPI, tenant_id: str) -> int:
        headers = {"Authorization": f"Bearer {_make_token(tenant_id)}"}
        async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as ac:
            resp = await ac.get("/feature", headers=headers)
        return resp.status_code

    @pytest.mark.asyncio
    async def test_active_tenant_passes(self, gated_app: FastAPI, seed_tenant) -> None:
        await seed_tenant("t-paid", update=EntitlementUpdate(phase=Phase.ACTIVE))
        assert await self._call(gated_app, "t-paid") == 200

    @pytest.mark.asyncio
    async def test_past_due_within_grace_passes(self, gated_app: FastAPI, seed_tenant) -> None:
        await seed_tenant(
            "t-late",
            update=EntitlementUpdate(phase=Phase.PAST_DUE, period_ends_at=datetime.now(UTC) - timedelta(days=1)),
        )
        assert await self._call(gated_app, "t-late") == 200

    @pytest.mark.asyncio
    async def test_canceled_tenant_is_blocked(self, gated_app: FastAPI, seed_tenant) -> None:
        await seed_tenant("t-gone", update=EntitlementUpdate(phase=Phase.CANCELED))

        headers = {"Authorization": f"Bearer {_make_token('t-gone')}"}
        async with AsyncClient(transport=ASGITransport(app=gated_app), base_url="http://test") as ac:
            resp = await ac.get("/feature", headers=headers)

        assert resp.status_code == 403
        assert "current status: 'canceled'" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_blocked(self, gated_app: FastAPI) -> None:
        assert await self._call(gated_app, "t-nobody") == 403

    @pytest.mark.asyncio
    async def test_guard_on_downstream_router_in_service_app(self, app: FastAPI, seed_tenant) -> None:
        sites = APIRouter(prefix="/sites")

        @sites.post("/publish")
        async def publish(_gate: None = Depends(require_entitlement())) -> dict[str, bool]:
            return {"published": True}

        app.include_router(sites, prefix="/api/v1")
        await seed_tenant("t-trial", update=EntitlementUpdate(phase=Phase.TRIALING))
        await seed_tenant("t-gone", update=EntitlementUpdate(phase=Phase.CANCELED))
        trial_token, gone_token = _make_token("t-trial"), _make_token("t-gone")

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            allowed = await ac.post("/api/v1/sites/publish", headers={"Authorization": f"Bearer {trial_token}"})
            denied = await ac.post("/api/v1/sites/publish", headers={"Authorization": f"Bearer {gone_token}"})
            anonymous = await ac.post("/api/v1/sites/publish")

        assert allowed.status_code == 200
        assert allowed.json() == {"published": True}
        assert denied.status_code == 403
        assert anonymous.status_code == 401
