"""Tests for entitlement_cli/app.py

Uses typer.testing.CliRunner against a temporary SQLite store.  Billing
state is seeded straight through the repositories; the Twilio and Resend
clients are patched at ``entitlement_cli.app.TwilioSmsClient`` and
``entitlement_cli.app.ResendEmailClient``.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from entitlement_engine.models.entitlement import EntitlementUpdate, Phase, Plan
from entitlement_engine.state.database import build_session_factory, session_scope
from entitlement_engine.state.repository import (
    EmailSendRepository,
    EntitlementRepository,
    RetentionSendRepository,
    TenantRepository,
)
from entitlement_engine.state.sqlite_adapter import get_local_engine
from typer.testing import CliRunner

from entitlement_api.services.messaging import DeliveryResult
from entitlement_cli.app import app

runner = CliRunner()

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "state.db"
    monkeypatch.setenv("ENTITLEMENT_DB_PATH", str(path))
    monkeypatch.setenv("API_RETENTION_ENABLED", "true")
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.output
    return path


def _set_state(db_path: Path, tenant_id: str, update: EntitlementUpdate) -> None:
    async def _apply() -> None:
        engine = get_local_engine(db_path)
        try:
            async with session_scope(build_session_factory(engine)) as session:
                await EntitlementRepository(session).upsert_from_webhook(tenant_id, update)
        finally:
            await engine.dispose()

    asyncio.run(_apply())


def _history(db_path: Path, tenant_id: str) -> list[int]:
    async def _load() -> list[int]:
        engine = get_local_engine(db_path)
        try:
            async with build_session_factory(engine)() as session:
                rows = await RetentionSendRepository(session).list_for_tenant(tenant_id)
                return [row.step for row in rows]
        finally:
            await engine.dispose()

    return asyncio.run(_load())


def _add_trial_tenant(db_path: Path, tenant_id: str = "t-1", days_elapsed: int = 9) -> None:
    result = runner.invoke(
        app,
        [
            "tenant",
            "add",
            tenant_id,
            "--business-name",
            "Acme Detailing",
            "--phone",
            "+15551110001",
            "--sms-consent",
        ],
    )
    assert result.exit_code == 0, result.output
    _set_state(
        db_path,
        tenant_id,
        EntitlementUpdate(phase=Phase.TRIALING, trial_ends_at=NOW + timedelta(days=14 - days_elapsed)),
    )


@pytest.fixture()
def sms_client():
    instance = MagicMock()
    instance.configured = True
    instance.send = AsyncMock(return_value=DeliveryResult(succeeded=True, provider_ref="SM1"))
    instance.close = AsyncMock()
    with patch("entitlement_cli.app.TwilioSmsClient") as cls:
        cls.from_settings.return_value = instance
        yield instance


@pytest.fixture()
def email_client():
    instance = MagicMock()
    instance.configured = True
    instance.send = AsyncMock(return_value=DeliveryResult(succeeded=True, provider_ref="em_1"))
    instance.close = AsyncMock()
    with patch("entitlement_cli.app.ResendEmailClient") as cls:
        cls.from_settings.return_value = instance
        yield instance


def _drips(db_path: Path, tenant_id: str) -> tuple[list[str], bool]:
    async def _load() -> tuple[list[str], bool]:
        engine = get_local_engine(db_path)
        try:
            async with build_session_factory(engine)() as session:
                rows = await EmailSendRepository(session).list_for_tenant(tenant_id)
                tenant = await TenantRepository(session).get(tenant_id)
                return [row.email_type for row in rows], bool(tenant and tenant.unsubscribed_from_emails)
        finally:
            await engine.dispose()

    return asyncio.run(_load())


# ---------------------------------------------------------------------------
# Store management
# ---------------------------------------------------------------------------


class TestInitDb:
    def test_creates_store(self, db_path: Path) -> None:
        assert db_path.exists()

    def test_is_idempotent(self, db_path: Path) -> None:
        result = runner.invoke(app, ["--json", "init-db"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"db_path": str(db_path), "initialised": True}

    def test_other_commands_need_a_store(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--db", str(tmp_path / "missing.db"), "show", "t-1"])
        assert result.exit_code == 3
        assert not (tmp_path / "missing.db").exists()


class TestTenantAdd:
    def test_duplicate_is_rejected(self, db_path: Path) -> None:
        assert runner.invoke(app, ["tenant", "add", "t-1"]).exit_code == 0
        assert runner.invoke(app, ["tenant", "add", "t-1"]).exit_code == 3


# ---------------------------------------------------------------------------
# show
# ---------------------------------------------------------------------------


class TestShow:
    def test_new_tenant_has_no_access(self, db_path: Path) -> None:
        runner.invoke(app, ["tenant", "add", "t-1"])

        result = runner.invoke(app, ["--json", "show", "t-1"])

        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["phase"] == "none"
        assert payload["plan"] is None
        assert payload["can_access"] is False

    def test_past_due_within_and_beyond_grace(self, db_path: Path) -> None:
        runner.invoke(app, ["tenant", "add", "t-1"])
        _set_state(db_path, "t-1", EntitlementUpdate(phase=Phase.PAST_DUE, plan=Plan.MONTHLY, period_ends_at=NOW))

        within = json.loads(
            runner.invoke(app, ["--json", "show", "t-1", "--at", (NOW + timedelta(days=2)).isoformat()]).stdout
        )
        beyond = json.loads(
            runner.invoke(app, ["--json", "show", "t-1", "--at", (NOW + timedelta(days=4)).isoformat()]).stdout
        )

        assert within["can_access"] is True
        assert within["plan"] == "monthly"
        assert beyond["can_access"] is False
        assert beyond["past_grace"] is True

    def test_trial_days_left(self, db_path: Path) -> None:
        runner.invoke(app, ["tenant", "add", "t-1"])
        _set_state(
            db_path,
            "t-1",
            EntitlementUpdate(phase=Phase.TRIALING, trial_ends_at=NOW + timedelta(days=5, hours=3)),
        )

        payload = json.loads(runner.invoke(app, ["--json", "show", "t-1", "--at", "2026-03-10T12:00:00"]).stdout)

        assert payload["trial_days_left"] == 6
        assert payload["can_access"] is True

    def test_human_output(self, db_path: Path) -> None:
        runner.invoke(app, ["tenant", "add", "t-1"])
        _set_state(db_path, "t-1", EntitlementUpdate(phase=Phase.ACTIVE, plan=Plan.ANNUAL))

        result = runner.invoke(app, ["show", "t-1"])

        assert result.exit_code == 0
        assert "Entitlement: t-1" in result.output
        assert "annual" in result.output

    def test_unknown_tenant(self, db_path: Path) -> None:
        result = runner.invoke(app, ["show", "ghost"])
        assert result.exit_code == 3

    def test_invalid_at(self, db_path: Path) -> None:
        result = runner.invoke(app, ["show", "t-1", "--at", "yesterday"])
        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# retention
# ---------------------------------------------------------------------------


class TestRetention:
    def test_run_sends_due_step(self, db_path: Path, sms_client: MagicMock) -> None:
        _add_trial_tenant(db_path)

        result = runner.invoke(app, ["--json", "retention", "run", "--at", NOW.isoformat()])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {
            "disabled": False,
            "processed": 1,
            "sent": 1,
            "failed": 0,
            "skipped": 0,
        }
        sms_client.send.assert_awaited_once()
        sms_client.close.assert_awaited_once()
        assert _history(db_path, "t-1") == [1]

    def test_failed_send_exits_non_zero(self, db_path: Path, sms_client: MagicMock) -> None:
        _add_trial_tenant(db_path)
        sms_client.send.return_value = DeliveryResult(succeeded=False, error="Twilio request timed out")

        result = runner.invoke(app, ["retention", "run", "--at", NOW.isoformat()])

        assert result.exit_code == 1
        assert _history(db_path, "t-1") == [1]

    def test_disabled_sequence(self, db_path: Path, sms_client: MagicMock, monkeypatch: pytest.MonkeyPatch) -> None:
        _add_trial_tenant(db_path)
        monkeypatch.setenv("API_RETENTION_ENABLED", "false")

        result = runner.invoke(app, ["retention", "run", "--at", NOW.isoformat()])

        assert result.exit_code == 0
        assert "disabled" in result.output
        sms_client.send.assert_not_awaited()

    def test_list(self, db_path: Path, sms_client: MagicMock) -> None:
        _add_trial_tenant(db_path, "t-1", days_elapsed=9)
        _add_trial_tenant(db_path, "t-2", days_elapsed=3)
        runner.invoke(app, ["retention", "run", "--at", NOW.isoformat()])

        result = runner.invoke(app, ["--json", "retention", "list", "--at", NOW.isoformat()])

        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        rows = {row["tenant_id"]: row for row in payload["tenants"]}
        assert payload["total"] == 2
        assert rows["t-1"]["retention_step"] == 1
        assert rows["t-1"]["days_in_trial"] == 9
        assert rows["t-2"]["retention_step"] == 0


class TestEmailDrips:
    def _add_trial_owner(self, db_path: Path, *extra: str) -> None:
        result = runner.invoke(
            app, ["tenant", "add", "t-1", "--email", "owner@acme.test", "--business-name", "Acme", *extra]
        )
        assert result.exit_code == 0, result.output
        _set_state(db_path, "t-1", EntitlementUpdate(phase=Phase.TRIALING, trial_ends_at=NOW + timedelta(hours=12)))

    def test_emails_sends_due_drip_once(
        self, db_path: Path, sms_client: MagicMock, email_client: MagicMock
    ) -> None:
        self._add_trial_owner(db_path)

        first = runner.invoke(app, ["--json", "retention", "emails", "--at", NOW.isoformat()])
        second = runner.invoke(app, ["--json", "retention", "emails", "--at", NOW.isoformat()])

        assert first.exit_code == 0, first.output
        assert json.loads(first.stdout)["sent"] == 1
        assert json.loads(second.stdout)["skipped"] == 1
        email_client.send.assert_awaited_once()
        assert email_client.send.await_args.args[0] == "owner@acme.test"
        assert _drips(db_path, "t-1") == (["trial_last_day"], False)

    def test_failed_email_exits_non_zero_and_is_not_recorded(
        self, db_path: Path, sms_client: MagicMock, email_client: MagicMock
    ) -> None:
        self._add_trial_owner(db_path)
        email_client.send.return_value = DeliveryResult(succeeded=False, error="Resend request timed out")

        result = runner.invoke(app, ["retention", "emails", "--at", NOW.isoformat()])

        assert result.exit_code == 1
        assert _drips(db_path, "t-1") == ([], False)

    def test_unsubscribe_stops_drips(
        self, db_path: Path, sms_client: MagicMock, email_client: MagicMock
    ) -> None:
        self._add_trial_owner(db_path)

        result = runner.invoke(app, ["--json", "tenant", "unsubscribe", "t-1"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"tenant_id": "t-1", "unsubscribed": True}

        result = runner.invoke(app, ["--json", "retention", "emails", "--at", NOW.isoformat()])
        assert json.loads(result.stdout)["processed"] == 0
        email_client.send.assert_not_awaited()
        assert _drips(db_path, "t-1") == ([], True)

    def test_add_unsubscribed(self, db_path: Path) -> None:
        self._add_trial_owner(db_path, "--unsubscribed")
        assert _drips(db_path, "t-1") == ([], True)

    def test_unsubscribe_unknown_tenant(self, db_path: Path) -> None:
        result = runner.invoke(app, ["tenant", "unsubscribe", "ghost"])
        assert result.exit_code == 3
