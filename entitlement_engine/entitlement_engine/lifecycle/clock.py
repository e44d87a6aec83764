"""Lifecycle clock: pure time arithmetic over billing timestamps.

Every function takes the current time as an explicit ``now`` argument and
performs no I/O, so lifecycle behaviour is unit-testable without patching
the wall clock.  Missing timestamps mean "not applicable" and produce a
safe default instead of raising: billing data is routinely incomplete for
tenants that never subscribed.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Protocol

from entitlement_engine.models.entitlement import Phase

_DAY_SECONDS = 86_400.0

# Ordered by label priority, highest first.
PHASE_LABELS: dict[Phase, str] = {
    Phase.TRIALING: "Free Trial",
    Phase.ACTIVE: "Active",
    Phase.PAST_DUE: "Past Due",
    Phase.CANCELED: "Canceled",
    Phase.NONE: "No Plan",
}


class LifecycleRecord(Protocol):
    """Anything carrying the billing fields the clock reads.

    Satisfied by both the ORM row and :class:`EntitlementSnapshot`.
    """

    phase: Phase | str
    trial_ends_at: datetime | None
    period_ends_at: datetime | None


def coerce_phase(value: Phase | str | None) -> Phase:
    """Normalise a stored phase value; unknown values read as ``none``."""
    if isinstance(value, Phase):
        return value
    try:
        return Phase(value) if value else Phase.NONE
    except ValueError:
        return Phase.NONE


def derive_phase_label(record: LifecycleRecord | None, now: datetime) -> str:
    """Return the user-facing label for a tenant's billing state.

    Presentation only; the authoritative value is the stored ``phase``.
    *now* is part of the signature so every clock function has the same
    shape; the label itself does not depend on it.
    """
    phase = coerce_phase(getattr(record, "phase", None))
    return PHASE_LABELS.get(phase, PHASE_LABELS[Phase.NONE])


def days_remaining(end: datetime | None, now: datetime) -> int:
    """Whole days left until *end*, rounded up and floored at zero.

    ``end = now + 5 days 3 hours`` gives ``6``; any past *end* gives ``0``.
    """
    if end is None:
        return 0
    seconds = (end - now).total_seconds()
    return max(0, math.ceil(seconds / _DAY_SECONDS))


def is_past_grace(period_ends_at: datetime | None, now: datetime, grace_days: int) -> bool:
    """``True`` once *now* is strictly after ``period_ends_at + grace_days``."""
    if period_ends_at is None:
        return False
    return now > period_ends_at + timedelta(days=grace_days)


def days_since(start: datetime | None, now: datetime) -> int:
    """Whole days elapsed since *start* (floor division)."""
    if start is None:
        return 0
    return math.floor((now - start).total_seconds() / _DAY_SECONDS)


def trial_start(trial_ends_at: datetime | None, trial_length_days: int) -> datetime | None:
    """Derive the trial start from its end and the configured trial length."""
    if trial_ends_at is None:
        return None
    return trial_ends_at - timedelta(days=trial_length_days)


def hours_between(start: datetime | None, end: datetime | None) -> float | None:
    """Signed, unrounded hours from *start* to *end*; ``None`` if either is missing.

    Drip email windows are measured in hours so that a one-hour welcome
    delay and multi-day windows share one unit.
    """
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 3600.0
