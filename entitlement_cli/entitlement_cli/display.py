"""Rich output formatting for the entitlement CLI.

All functions write to a :class:`rich.console.Console` instance (bound to
*stderr*) so that ``--json`` output on *stdout* stays machine-readable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

_PHASE_COLOURS: dict[str, str] = {
    "active": "green",
    "trialing": "cyan",
    "past_due": "yellow",
    "canceled": "red",
    "none": "dim",
}


def _coloured_phase(phase: str) -> str:
    colour = _PHASE_COLOURS.get(phase, "white")
    return f"[{colour}]{phase}[/{colour}]"


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value is not None else "-"


# ---------------------------------------------------------------------------
# Entitlement
# ---------------------------------------------------------------------------


def display_entitlement(console: Console, tenant_id: str, summary: dict[str, Any]) -> None:
    """Render one tenant's stored billing state and gate outcome.

    Parameters
    ----------
    console:
        Rich console to write to.
    tenant_id:
        Tenant the summary belongs to.
    summary:
        Output of the ``show`` command's summary builder: gate fields plus
        ``plan``, ``trial_ends_at``, ``period_ends_at`` and
        ``cancel_at_period_end``.
    """
    access = "[green]yes[/green]" if summary["can_access"] else "[red]no[/red]"
    lines = [
        f"[bold]Phase:[/bold]       {_coloured_phase(summary['phase'])}  ({summary['label']})",
        f"[bold]Plan:[/bold]        {summary['plan'] or '-'}",
        f"[bold]Trial ends:[/bold]  {_fmt_time(summary['trial_ends_at'])}",
        f"[bold]Period ends:[/bold] {_fmt_time(summary['period_ends_at'])}",
        f"[bold]Access:[/bold]      {access}",
    ]
    if summary["phase"] == "trialing":
        lines.append(f"[bold]Days left:[/bold]   {summary['trial_days_left']}")
    if summary["past_grace"]:
        lines.append("[yellow]Payment grace period has elapsed.[/yellow]")
    if summary["cancel_at_period_end"]:
        lines.append("[yellow]Cancels at period end.[/yellow]")

    console.print(Panel("\n".join(lines), title=f"Entitlement: {tenant_id}", border_style="blue"))


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


def display_retention_summary(console: Console, summary: dict[str, Any], *, title: str = "Retention run") -> None:
    """Render the counts from one scheduler pass."""
    if summary.get("disabled"):
        console.print(f"[yellow]{title}: disabled; nothing was sent.[/yellow]")
        return

    table = Table(title=title, show_lines=False, expand=False)
    table.add_column("Processed", justify="right")
    table.add_column("Sent", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_row(
        str(summary["processed"]),
        str(summary["sent"]),
        str(summary["failed"]),
        str(summary["skipped"]),
    )
    console.print(table)


def display_retention_list(console: Console, rows: list[dict[str, Any]], total_steps: int) -> None:
    """Render trial tenants with their retention progress."""
    if not rows:
        console.print("[dim]No tenants in trial.[/dim]")
        return

    table = Table(title=f"Trial tenants ({len(rows)})", show_lines=False, expand=False)
    table.add_column("Tenant", style="bold")
    table.add_column("Business")
    table.add_column("Day", justify="right")
    table.add_column("Step", justify="right")
    table.add_column("Last sent")
    table.add_column("Consent")
    table.add_column("Activated")

    for row in rows:
        failed = any(not event["succeeded"] for event in row["events"])
        step = f"{row['retention_step']}/{total_steps}"
        if failed:
            step = f"[red]{step}[/red]"
        table.add_row(
            row["tenant_id"],
            row["business_name"] or "-",
            str(row["days_in_trial"]),
            step,
            _fmt_time(row["last_sent_at"]),
            "yes" if row["sms_consent"] else "no",
            "yes" if row["activated"] else "no",
        )

    console.print(table)
