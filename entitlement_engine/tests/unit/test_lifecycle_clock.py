"""Tests for the lifecycle clock: pure time arithmetic over billing timestamps."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from entitlement_engine.lifecycle.clock import (
    coerce_phase,
    days_remaining,
    days_since,
    derive_phase_label,
    hours_between,
    is_past_grace,
    trial_start,
)
from entitlement_engine.models.entitlement import EntitlementSnapshot, Phase

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class TestDaysRemaining:
    def test_partial_day_rounds_up(self) -> None:
        assert days_remaining(NOW + timedelta(days=5, hours=3), NOW) == 6

    def test_exact_days(self) -> None:
        assert days_remaining(NOW + timedelta(days=14), NOW) == 14

    def test_one_second_in_the_past_is_zero(self) -> None:
        assert days_remaining(NOW - timedelta(seconds=1), NOW) == 0

    def test_far_past_never_negative(self) -> None:
        assert days_remaining(NOW - timedelta(days=40), NOW) == 0

    def test_missing_end_is_zero(self) -> None:
        assert days_remaining(None, NOW) == 0


class TestIsPastGrace:
    def test_inside_grace(self) -> None:
        end = NOW - timedelta(days=2)
        assert is_past_grace(end, NOW, grace_days=3) is False

    def test_boundary_is_not_past(self) -> None:
        end = NOW - timedelta(days=3)
        assert is_past_grace(end, NOW, grace_days=3) is False

    def test_after_grace(self) -> None:
        end = NOW - timedelta(days=3, seconds=1)
        assert is_past_grace(end, NOW, grace_days=3) is True

    def test_zero_grace(self) -> None:
        assert is_past_grace(NOW - timedelta(seconds=1), NOW, grace_days=0) is True

    def test_missing_period_end(self) -> None:
        assert is_past_grace(None, NOW, grace_days=3) is False


class TestDaysSinceAndTrialStart:
    def test_floor_division(self) -> None:
        assert days_since(NOW - timedelta(days=9, hours=23), NOW) == 9

    def test_missing_start(self) -> None:
        assert days_since(None, NOW) == 0

    def test_trial_start_uses_configured_length(self) -> None:
        ends = NOW + timedelta(days=4)
        assert trial_start(ends, 14) == NOW - timedelta(days=10)
        assert trial_start(ends, 7) == NOW - timedelta(days=3)

    def test_trial_start_missing_end(self) -> None:
        assert trial_start(None, 14) is None

    def test_hours_between_is_signed(self) -> None:
        assert hours_between(NOW, NOW + timedelta(hours=1, minutes=30)) == 1.5
        assert hours_between(NOW + timedelta(days=1), NOW) == -24
        assert hours_between(None, NOW) is None


class TestPhaseLabel:
    @pytest.mark.parametrize(
        ("phase", "label"),
        [
            (Phase.TRIALING, "Free Trial"),
            (Phase.ACTIVE, "Active"),
            (Phase.PAST_DUE, "Past Due"),
            (Phase.CANCELED, "Canceled"),
            (Phase.NONE, "No Plan"),
        ],
    )
    def test_labels(self, phase: Phase, label: str) -> None:
        assert derive_phase_label(EntitlementSnapshot(phase=phase), NOW) == label

    def test_missing_record(self) -> None:
        assert derive_phase_label(None, NOW) == "No Plan"

    def test_raw_string_phase_from_storage(self) -> None:
        row = SimpleNamespace(phase="past_due", trial_ends_at=None, period_ends_at=None)
        assert derive_phase_label(row, NOW) == "Past Due"

    def test_unknown_stored_value_reads_as_none(self) -> None:
        assert coerce_phase("paused") == Phase.NONE
        assert coerce_phase(None) == Phase.NONE
