"""Lifecycle clock and feature gate."""

from entitlement_engine.lifecycle.clock import (
    days_remaining,
    days_since,
    derive_phase_label,
    hours_between,
    is_past_grace,
    trial_start,
)
from entitlement_engine.lifecycle.gate import can_access, describe_access

__all__ = [
    "can_access",
    "days_remaining",
    "days_since",
    "derive_phase_label",
    "describe_access",
    "hours_between",
    "is_past_grace",
    "trial_start",
]
