"""Entitlement CLI application: Typer-based operator interface.

Works against a local SQLite entitlement store.  Provides commands to
initialise the store, register tenant profiles, inspect a tenant's
entitlement, run or inspect the retention SMS sequence and run the
lifecycle email drips.  Human-readable
output goes to *stderr* via Rich; ``--json`` writes machine-readable
results to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import typer
from entitlement_engine.config import load_engine_settings
from entitlement_engine.lifecycle.gate import describe_access
from entitlement_engine.models.entitlement import Plan
from entitlement_engine.state.database import build_session_factory, session_scope
from entitlement_engine.state.repository import EntitlementRepository, TenantRepository
from entitlement_engine.state.sqlite_adapter import DEFAULT_DB_PATH, create_local_tables, get_local_engine
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_api.config import load_api_settings
from entitlement_api.services.email_client import ResendEmailClient
from entitlement_api.services.messaging import TwilioSmsClient
from entitlement_api.services.retention_scheduler import RetentionScheduler
from entitlement_api.services.retention_service import RetentionService
from entitlement_cli.display import (
    display_entitlement,
    display_retention_list,
    display_retention_summary,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="entitlement",
    help="Entitlement & lifecycle engine operator CLI",
    no_args_is_help=True,
)
console = Console(stderr=True)

tenant_app = typer.Typer(name="tenant", help="Manage local tenant profiles.", no_args_is_help=True)
app.add_typer(tenant_app, name="tenant")

retention_app = typer.Typer(
    name="retention", help="Run and inspect retention SMS and email drips.", no_args_is_help=True
)
app.add_typer(retention_app, name="retention")

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_db_path: Path = Path(DEFAULT_DB_PATH)


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    db_path: Path = typer.Option(
        Path(DEFAULT_DB_PATH),
        "--db",
        help="Path to the local SQLite entitlement store.",
        envvar="ENTITLEMENT_DB_PATH",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _db_path  # noqa: PLW0603
    _json_output = json_mode
    _db_path = db_path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_at(value: str | None) -> datetime:
    """Parse an ``--at`` override; naive values are taken as UTC."""
    if value is None:
        return datetime.now(UTC)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid --at timestamp '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _write_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run_with_store(
    func: Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]],
    *,
    create: bool = False,
) -> T:
    """Open the local store, run *func* with a session factory, then dispose.

    Commands other than ``init-db`` refuse to create a new database file.
    """
    if not create and not _db_path.exists():
        console.print(f"[red]No entitlement store at {_db_path}. Run 'entitlement init-db' first.[/red]")
        raise typer.Exit(code=3)

    async def _main() -> T:
        engine = get_local_engine(_db_path)
        try:
            if create:
                await create_local_tables(engine)
            return await func(build_session_factory(engine))
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except SQLAlchemyError as exc:
        console.print(f"[red]Database error: {exc}[/red]")
        raise typer.Exit(code=3) from exc


# ---------------------------------------------------------------------------
# Store management
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the local SQLite store and its tables (idempotent)."""

    async def _noop(_factory: async_sessionmaker[AsyncSession]) -> None:
        return None

    _run_with_store(_noop, create=True)
    if _json_output:
        _write_json({"db_path": str(_db_path), "initialised": True})
    else:
        console.print(f"[green]Entitlement store ready at[/green] [bold]{_db_path}[/bold]")


@tenant_app.command("add")
def tenant_add(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    email: str | None = typer.Option(None, "--email", help="Account owner email."),
    business_name: str | None = typer.Option(None, "--business-name", help="Business display name."),
    phone: str | None = typer.Option(None, "--phone", help="Owner phone number in E.164 form."),
    sms_consent: bool = typer.Option(False, "--sms-consent/--no-sms-consent", help="Owner consented to SMS."),
    site_slug: str | None = typer.Option(None, "--site-slug", help="Published site slug."),
    onboarded: bool = typer.Option(False, "--onboarded/--not-onboarded", help="Onboarding completed."),
    unsubscribed: bool = typer.Option(False, "--unsubscribed/--subscribed", help="Opted out of drip emails."),
) -> None:
    """Register a tenant profile with an empty billing record."""

    async def _add(factory: async_sessionmaker[AsyncSession]) -> bool:
        async with session_scope(factory) as session:
            repo = TenantRepository(session)
            if await repo.get(tenant_id) is not None:
                return False
            await repo.create(
                tenant_id,
                email=email,
                business_name=business_name,
                phone=phone,
                onboarding_complete=onboarded,
                site_slug=site_slug,
                sms_consent=sms_consent,
                unsubscribed_from_emails=unsubscribed,
            )
            return True

    if not _run_with_store(_add):
        console.print(f"[red]Tenant '{tenant_id}' already exists.[/red]")
        raise typer.Exit(code=3)

    if _json_output:
        _write_json({"tenant_id": tenant_id, "created": True})
    else:
        console.print(f"Tenant [bold]{tenant_id}[/bold] created.")


@tenant_app.command("unsubscribe")
def tenant_unsubscribe(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
) -> None:
    """Opt a tenant out of every lifecycle drip email."""

    async def _unsubscribe(factory: async_sessionmaker[AsyncSession]) -> bool:
        async with session_scope(factory) as session:
            return await TenantRepository(session).set_email_opt_out(tenant_id, True)

    if not _run_with_store(_unsubscribe):
        console.print(f"[red]Tenant '{tenant_id}' not found.[/red]")
        raise typer.Exit(code=3)

    if _json_output:
        _write_json({"tenant_id": tenant_id, "unsubscribed": True})
    else:
        console.print(f"Tenant [bold]{tenant_id}[/bold] unsubscribed from drip emails.")


# ---------------------------------------------------------------------------
# Entitlement
# ---------------------------------------------------------------------------


@app.command()
def show(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    at: str | None = typer.Option(None, "--at", help="Evaluate at this ISO-8601 time instead of now."),
) -> None:
    """Show a tenant's stored billing state and whether the gate lets it in."""
    now = _parse_at(at)
    engine_settings = load_engine_settings()

    async def _load(factory: async_sessionmaker[AsyncSession]) -> dict[str, Any] | None:
        async with factory() as session:
            record = await EntitlementRepository(session).get(tenant_id)
        if record is None:
            return None
        summary = describe_access(record, now, engine_settings.grace_days)
        summary.update(
            {
                "tenant_id": tenant_id,
                "plan": record.plan if record.plan != Plan.NONE.value else None,
                "trial_ends_at": record.trial_ends_at,
                "period_ends_at": record.period_ends_at,
                "cancel_at_period_end": bool(record.cancel_at_period_end),
            }
        )
        return summary

    summary = _run_with_store(_load)
    if summary is None:
        console.print(f"[red]Tenant '{tenant_id}' has no billing record.[/red]")
        raise typer.Exit(code=3)

    if _json_output:
        _write_json(summary)
    else:
        display_entitlement(console, tenant_id, summary)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


@retention_app.command("run")
def retention_run(
    at: str | None = typer.Option(None, "--at", help="Evaluate at this ISO-8601 time instead of now."),
) -> None:
    """Run one retention pass over every eligible trial tenant."""
    now = _parse_at(at)
    settings = load_api_settings()
    engine_settings = load_engine_settings()

    async def _run(factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        messenger = TwilioSmsClient.from_settings(settings)
        if not messenger.configured:
            console.print("[yellow]Twilio credentials are not configured; sends will be recorded as failed.[/yellow]")
        try:
            scheduler = RetentionScheduler(factory, settings, engine_settings, messenger)
            return await scheduler.run_once(now)
        finally:
            await messenger.close()

    summary = _run_with_store(_run)
    if _json_output:
        _write_json(summary)
    else:
        display_retention_summary(console, summary)

    if summary["failed"]:
        raise typer.Exit(code=1)


@retention_app.command("list")
def retention_list(
    at: str | None = typer.Option(None, "--at", help="Compute trial days at this ISO-8601 time."),
) -> None:
    """List trial tenants with their retention progress."""
    now = _parse_at(at)
    settings = load_api_settings()
    engine_settings = load_engine_settings()

    async def _list(factory: async_sessionmaker[AsyncSession]) -> tuple[list[dict[str, Any]], int]:
        messenger = TwilioSmsClient.from_settings(settings)
        try:
            async with factory() as session:
                service = RetentionService(session, settings, engine_settings, messenger)
                return await service.list_trial_tenants(now), len(service.steps)
        finally:
            await messenger.close()

    rows, total_steps = _run_with_store(_list)
    if _json_output:
        _write_json({"tenants": rows, "total": len(rows)})
    else:
        display_retention_list(console, rows, total_steps)


@retention_app.command("emails")
def retention_emails(
    at: str | None = typer.Option(None, "--at", help="Evaluate at this ISO-8601 time instead of now."),
) -> None:
    """Run one lifecycle email drip pass."""
    now = _parse_at(at)
    settings = load_api_settings()
    engine_settings = load_engine_settings()

    async def _run(factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        messenger = TwilioSmsClient.from_settings(settings)
        mailer = ResendEmailClient.from_settings(settings)
        if not mailer.configured:
            console.print("[yellow]Resend API key is not configured; every send will fail.[/yellow]")
        try:
            scheduler = RetentionScheduler(factory, settings, engine_settings, messenger, mailer=mailer)
            return await scheduler.run_email_drips(now)
        finally:
            await mailer.close()
            await messenger.close()

    summary = _run_with_store(_run)
    if _json_output:
        _write_json(summary)
    else:
        display_retention_summary(console, summary, title="Email drips")

    if summary["failed"]:
        raise typer.Exit(code=1)
