"""Lifecycle email drips.

Three sequences, each tied to one billing phase and measured in hours
from an anchor timestamp:

- onboarding: phase ``none`` and not activated, anchored on signup
- trial conversion: phase ``trialing``, anchored on the trial end (the
  windows sit before it, so their bounds are negative)
- win-back: phase ``canceled``, anchored on the end of the last paid period

Every window is half-open, ``[start, end)``.  Each email type goes to a
tenant at most once; selection is pure and takes the types already on
record.
"""

from __future__ import annotations

import html
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from entitlement_engine.lifecycle.clock import coerce_phase, hours_between
from entitlement_engine.models.entitlement import Phase
from entitlement_engine.retention.policy import FIRST_NAME_FALLBACK


class DripEmail(str, Enum):
    ONBOARDING_WELCOME = "onboarding_welcome"
    ONBOARDING_DEMO_READY = "onboarding_demo_ready"
    ONBOARDING_SOCIAL_PROOF = "onboarding_social_proof"
    ONBOARDING_URGENCY = "onboarding_urgency"
    TRIAL_CHECKIN = "trial_checkin"
    TRIAL_ENDING_SOON = "trial_ending_soon"
    TRIAL_LAST_DAY = "trial_last_day"
    WINBACK_NOTICE = "winback_notice"
    WINBACK_OFFER = "winback_offer"


@dataclass(frozen=True)
class DripWindow:
    """Hours after the sequence anchor during which *email* may go out."""

    email: DripEmail
    start_hours: float
    end_hours: float

    def contains(self, hours: float) -> bool:
        return self.start_hours <= hours < self.end_hours


ONBOARDING_WINDOWS: tuple[DripWindow, ...] = (
    DripWindow(DripEmail.ONBOARDING_WELCOME, 1, 24),
    DripWindow(DripEmail.ONBOARDING_DEMO_READY, 24, 72),
    DripWindow(DripEmail.ONBOARDING_SOCIAL_PROOF, 72, 168),
    DripWindow(DripEmail.ONBOARDING_URGENCY, 168, 240),
)

# 11, 4 and 1 days left in the trial.
TRIAL_WINDOWS: tuple[DripWindow, ...] = (
    DripWindow(DripEmail.TRIAL_CHECKIN, -264, -240),
    DripWindow(DripEmail.TRIAL_ENDING_SOON, -96, -72),
    DripWindow(DripEmail.TRIAL_LAST_DAY, -24, 0),
)

WINBACK_WINDOWS: tuple[DripWindow, ...] = (
    DripWindow(DripEmail.WINBACK_NOTICE, 24, 168),
    DripWindow(DripEmail.WINBACK_OFFER, 168, 336),
)


@dataclass(frozen=True)
class DripRecipient:
    """The billing and profile facts drip selection reads for one tenant."""

    phase: Phase | str
    activated: bool
    signed_up_at: datetime | None
    trial_ends_at: datetime | None
    period_ends_at: datetime | None


def sequence_for(recipient: DripRecipient) -> tuple[datetime | None, tuple[DripWindow, ...]]:
    """Return the anchor timestamp and windows that apply to *recipient*.

    Tenants in ``active`` or ``past_due``, and activated tenants without a
    subscription, are in no sequence.
    """
    phase = coerce_phase(recipient.phase)
    if phase == Phase.NONE and not recipient.activated:
        return recipient.signed_up_at, ONBOARDING_WINDOWS
    if phase == Phase.TRIALING:
        return recipient.trial_ends_at, TRIAL_WINDOWS
    if phase == Phase.CANCELED:
        return recipient.period_ends_at, WINBACK_WINDOWS
    return None, ()


def select_drip_email(
    recipient: DripRecipient,
    now: datetime,
    already_sent: Iterable[str],
) -> DripEmail | None:
    """Return the email whose window contains *now*, unless it was already sent.

    Windows within a sequence do not overlap, so at most one email is due.
    """
    anchor, windows = sequence_for(recipient)
    hours = hours_between(anchor, now)
    if hours is None:
        return None
    sent = set(already_sent)
    for window in windows:
        if window.contains(hours):
            return None if window.email.value in sent else window.email
    return None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str


@dataclass(frozen=True)
class _Copy:
    subject: str
    paragraphs: tuple[str, ...]
    button: str
    path: str


_COPY: dict[DripEmail, _Copy] = {
    DripEmail.ONBOARDING_WELCOME: _Copy(
        "Your Darker site is being set up, {name}",
        (
            "Welcome to Darker! We're getting your detailing website ready.",
            "Pick up where you left off and you'll have online booking, deposits "
            "and SMS reminders running in a few minutes.",
        ),
        "Continue setup",
        "/dashboard",
    ),
    DripEmail.ONBOARDING_DEMO_READY: _Copy(
        "{name}, your demo is waiting",
        (
            "We built a demo site for your business from the details you gave us.",
            "Take a look and start your free trial when you're happy with it.",
        ),
        "See my demo",
        "/dashboard",
    ),
    DripEmail.ONBOARDING_SOCIAL_PROOF: _Copy(
        "Most detailers see their first booking in week 1",
        (
            "Shops that go live in their first week usually get a booking before the week is out.",
            "Your site is nearly done. Finish it and start your trial today.",
        ),
        "Finish my site",
        "/dashboard",
    ),
    DripEmail.ONBOARDING_URGENCY: _Copy(
        "We'll delete your demo in 48 hours",
        ("Your demo site is about to be cleaned up. Start your trial to keep it.",),
        "Keep my site",
        "/dashboard",
    ),
    DripEmail.TRIAL_CHECKIN: _Copy(
        "How's the trial going, {name}?",
        (
            "You're a few days into your trial. Is your site live yet?",
            "Reply to this email if anything is in the way. A real person reads every reply.",
        ),
        "Open my dashboard",
        "/dashboard",
    ),
    DripEmail.TRIAL_ENDING_SOON: _Copy(
        "4 days left on your trial",
        (
            "Your trial ends in 4 days.",
            "Pick a plan now and your site, bookings and customer list carry straight over.",
        ),
        "Choose a plan",
        "/dashboard/billing",
    ),
    DripEmail.TRIAL_LAST_DAY: _Copy(
        "Tomorrow's the last day, {name}",
        ("Your trial ends tomorrow. Subscribe today so your booking site stays online.",),
        "Keep my site online",
        "/dashboard/billing",
    ),
    DripEmail.WINBACK_NOTICE: _Copy(
        "Your site will go offline soon",
        (
            "Your subscription has ended, so your booking site will be taken offline.",
            "Everything is saved. Resubscribe any time to bring it back as it was.",
        ),
        "Reactivate",
        "/dashboard/billing",
    ),
    DripEmail.WINBACK_OFFER: _Copy(
        "Was there something we could've done better?",
        (
            "We'd like to know why Darker didn't work out for you.",
            "Hit reply and tell us. If you want to come back, your site is still here.",
        ),
        "Come back",
        "/dashboard/billing",
    ),
}


def render_drip_email(email: DripEmail, *, name: str | None, app_url: str) -> RenderedEmail:
    """Build the subject and HTML body for *email*.

    The body ends with a link to the dashboard email preferences, where the
    tenant can opt out of every drip.
    """
    copy = _COPY[email]
    display_name = name or FIRST_NAME_FALLBACK
    base = app_url.rstrip("/")
    body = "".join(f"<p>{html.escape(p)}</p>" for p in copy.paragraphs)
    page = (
        f"<h2>Hey {html.escape(display_name)}</h2>"
        f"{body}"
        f'<p><a href="{html.escape(base + copy.path)}">{html.escape(copy.button)}</a></p>'
        f'<p><small><a href="{html.escape(base)}/dashboard/settings#emails">Unsubscribe from emails</a></small></p>'
    )
    return RenderedEmail(subject=copy.subject.format(name=display_name), html=page)
