"""Feature gate: decide whether a tenant may use gated capabilities now.

The gate is a pure predicate over the stored entitlement and an explicit
``now``.  It is evaluated on every access check and never cached, because
the phase can change between two renders (for example right after a poll
refresh).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from entitlement_engine.lifecycle.clock import (
    LifecycleRecord,
    coerce_phase,
    days_remaining,
    derive_phase_label,
    is_past_grace,
)
from entitlement_engine.models.entitlement import Phase

DEFAULT_GRACE_DAYS = 3


def can_access(record: LifecycleRecord | None, now: datetime, grace_days: int = DEFAULT_GRACE_DAYS) -> bool:
    """Return ``True`` if the tenant may access gated features at *now*.

    * ``active`` / ``trialing`` -- allowed.
    * ``past_due`` within ``grace_days`` of ``period_ends_at`` -- allowed.
    * anything else (including no record at all) -- denied.
    """
    if record is None:
        return False
    phase = coerce_phase(record.phase)
    if phase in (Phase.ACTIVE, Phase.TRIALING):
        return True
    if phase == Phase.PAST_DUE:
        return not is_past_grace(record.period_ends_at, now, grace_days)
    return False


def describe_access(
    record: LifecycleRecord | None,
    now: datetime,
    grace_days: int = DEFAULT_GRACE_DAYS,
) -> dict[str, Any]:
    """Summarise gate inputs and outcome for the dashboard."""
    phase = coerce_phase(getattr(record, "phase", None))
    trial_ends_at = getattr(record, "trial_ends_at", None)
    period_ends_at = getattr(record, "period_ends_at", None)
    return {
        "phase": phase.value,
        "label": derive_phase_label(record, now),
        "trial_days_left": days_remaining(trial_ends_at, now) if phase == Phase.TRIALING else 0,
        "past_grace": phase == Phase.PAST_DUE and is_past_grace(period_ends_at, now, grace_days),
        "can_access": can_access(record, now, grace_days),
    }
