"""Retention step policy for un-activated trial tenants.

Three outreach steps fire at increasing elapsed-trial-day thresholds.  The
policy is pure: given the elapsed days and the set of steps already on
record it names the single step to send next, if any.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

FIRST_NAME_FALLBACK = "there"

DEFAULT_TEMPLATES: dict[int, str] = {
    1: (
        "Hey {{first_name}}, your booking site is almost ready to go live. "
        "Turn it on now so you can start taking bookings before your trial ends."
    ),
    2: (
        "Detailers on our platform are booking more jobs without touching their phones. "
        "Your site is 90% done - flip it live and start capturing leads."
    ),
    3: (
        "Last day before your trial ends. Turn your site on now to keep it "
        "and start taking bookings: {{activation_link}}"
    ),
}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(first_name|activation_link)\s*\}\}")


@dataclass(frozen=True)
class RetentionStep:
    """One outreach step: its number, day threshold and message template."""

    number: int
    day_offset: int
    template: str


def build_steps(day_offsets: Sequence[int], templates: dict[int, str] | None = None) -> tuple[RetentionStep, ...]:
    """Pair configured day offsets with templates, numbering steps from 1."""
    templates = templates or DEFAULT_TEMPLATES
    steps: list[RetentionStep] = []
    for number, offset in enumerate(day_offsets, start=1):
        if number not in templates:
            raise ValueError(f"No retention template configured for step {number}")
        steps.append(RetentionStep(number=number, day_offset=offset, template=templates[number]))
    return tuple(steps)


def select_next_step(
    days_elapsed: int,
    sent_steps: Iterable[int],
    steps: Sequence[RetentionStep],
) -> RetentionStep | None:
    """Return the lowest-numbered unsent step whose threshold is reached.

    At most one step is returned, so a tenant that is already past several
    thresholds still receives only the earliest missing step this run.
    """
    already_sent = set(sent_steps)
    for step in sorted(steps, key=lambda s: s.number):
        if step.number in already_sent:
            continue
        if days_elapsed >= step.day_offset:
            return step
        # Later steps have later thresholds.
        return None
    return None


def next_unsent_step(sent_steps: Iterable[int], steps: Sequence[RetentionStep]) -> RetentionStep | None:
    """Return the lowest unsent step regardless of its day threshold."""
    already_sent = set(sent_steps)
    for step in sorted(steps, key=lambda s: s.number):
        if step.number not in already_sent:
            return step
    return None


def first_name(business_name: str | None) -> str:
    """First word of the business name, or a friendly fallback."""
    words = (business_name or "").split()
    return words[0] if words else FIRST_NAME_FALLBACK


def render_message(template: str, *, name: str, activation_link: str = "") -> str:
    """Substitute ``{{first_name}}`` and ``{{activation_link}}`` in *template*."""
    values = {"first_name": name or FIRST_NAME_FALLBACK, "activation_link": activation_link}
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)


def is_activated(onboarding_complete: bool, site_slug: str | None) -> bool:
    """A tenant is activated once onboarding is done and the site has a slug."""
    return bool(onboarding_complete) and bool(site_slug)
