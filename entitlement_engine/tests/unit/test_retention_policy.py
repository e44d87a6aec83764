"""Tests for retention step selection and message rendering."""

from __future__ import annotations

import pytest

from entitlement_engine.retention.policy import (
    DEFAULT_TEMPLATES,
    build_steps,
    first_name,
    is_activated,
    next_unsent_step,
    render_message,
    select_next_step,
)

STEPS = build_steps([9, 11, 13])


class TestSelectNextStep:
    def test_before_first_threshold(self) -> None:
        assert select_next_step(8, set(), STEPS) is None

    def test_first_step_at_day_ten(self) -> None:
        step = select_next_step(10, set(), STEPS)
        assert step is not None and step.number == 1

    def test_second_step_after_first_sent(self) -> None:
        step = select_next_step(12, {1}, STEPS)
        assert step is not None and step.number == 2

    def test_late_tenant_gets_only_the_earliest_missing_step(self) -> None:
        step = select_next_step(20, set(), STEPS)
        assert step is not None and step.number == 1

    def test_all_sent(self) -> None:
        assert select_next_step(20, {1, 2, 3}, STEPS) is None

    def test_second_step_not_reached_yet(self) -> None:
        assert select_next_step(10, {1}, STEPS) is None

    def test_custom_offsets(self) -> None:
        steps = build_steps([1, 2, 3])
        step = select_next_step(2, {1}, steps)
        assert step is not None and step.number == 2

    def test_build_steps_rejects_missing_template(self) -> None:
        with pytest.raises(ValueError, match="step 4"):
            build_steps([1, 2, 3, 4])


class TestNextUnsentStep:
    def test_ignores_thresholds(self) -> None:
        step = next_unsent_step({1}, STEPS)
        assert step is not None and step.number == 2

    def test_gap_is_filled_first(self) -> None:
        step = next_unsent_step({1, 3}, STEPS)
        assert step is not None and step.number == 2

    def test_exhausted(self) -> None:
        assert next_unsent_step({1, 2, 3}, STEPS) is None


class TestRendering:
    def test_first_name_from_business_name(self) -> None:
        assert first_name("Shine  Bros Detailing") == "Shine"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_first_name_fallback(self, value: str | None) -> None:
        assert first_name(value) == "there"

    def test_render_step_one(self) -> None:
        body = render_message(DEFAULT_TEMPLATES[1], name="Shine")
        assert body.startswith("Hey Shine,")
        assert "{{" not in body

    def test_render_activation_link(self) -> None:
        body = render_message(DEFAULT_TEMPLATES[3], name="Shine", activation_link="https://app.example/site")
        assert body.endswith("https://app.example/site")

    def test_render_empty_name_uses_fallback(self) -> None:
        assert render_message("Hi {{first_name}}", name="") == "Hi there"


class TestIsActivated:
    def test_requires_both_onboarding_and_slug(self) -> None:
        assert is_activated(True, "shine-bros")
        assert not is_activated(True, None)
        assert not is_activated(True, "")
        assert not is_activated(False, "shine-bros")
