"""Entitlement state models shared by the reconcilers and the feature gate.

``EntitlementSnapshot`` is the full, authoritative billing state of one
tenant as produced by a poll.  ``EntitlementUpdate`` is a partial update
produced by a single webhook event: only the fields explicitly set on the
instance are written to the store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Phase(str, Enum):
    """Authoritative billing lifecycle phase of a tenant."""

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Plan(str, Enum):
    """Subscribed plan, derived from the billing provider price id."""

    MONTHLY = "monthly"
    ANNUAL = "annual"
    NONE = "none"


# Provider subscription statuses that keep a subscription "live" for
# selection during a poll.  Order is irrelevant; the provider lists
# subscriptions newest first.
LIVE_SUBSCRIPTION_STATUSES: frozenset[str] = frozenset({"trialing", "active", "past_due"})

# Provider statuses that mean the subscription is over.
TERMINAL_SUBSCRIPTION_STATUSES: frozenset[str] = frozenset({"canceled", "unpaid", "incomplete_expired"})


class EntitlementSnapshot(BaseModel):
    """Complete billing state of a tenant, written in one shot by a poll."""

    phase: Phase = Field(
        default=Phase.NONE,
        description="Authoritative lifecycle phase.",
    )
    plan: Plan = Field(
        default=Plan.NONE,
        description="Plan derived from the subscribed price.",
    )
    billing_customer_ref: str | None = Field(
        default=None,
        description="Billing provider customer id.",
    )
    billing_subscription_ref: str | None = Field(
        default=None,
        description="Billing provider subscription id.",
    )
    trial_ends_at: datetime | None = Field(
        default=None,
        description="End of the free trial, if the tenant ever trialed.",
    )
    period_ends_at: datetime | None = Field(
        default=None,
        description="Paid-through (or trial-through) timestamp.",
    )
    cancel_at_period_end: bool = Field(
        default=False,
        description="Subscription ends at period_ends_at without further events.",
    )

    @property
    def subscribed(self) -> bool:
        """``True`` while the tenant is paying or trialing."""
        return self.phase in (Phase.ACTIVE, Phase.TRIALING)

    def to_poll_response(self) -> dict[str, Any]:
        """Render the snapshot in the shape the dashboard polls for."""
        return {
            "subscribed": self.subscribed,
            "status": self.phase.value,
            "plan": self.plan.value if self.plan != Plan.NONE else None,
            "trialEnd": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            "subscriptionEnd": self.period_ends_at.isoformat() if self.period_ends_at else None,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
        }


class EntitlementUpdate(BaseModel):
    """Partial billing update derived from a single webhook event.

    Field-level last-write-wins: the store writes exactly the fields in
    ``model_fields_set``, so leaving a field unset keeps the stored value
    while setting it to ``None`` clears it.
    """

    phase: Phase | None = None
    plan: Plan | None = None
    billing_customer_ref: str | None = None
    billing_subscription_ref: str | None = None
    trial_ends_at: datetime | None = None
    period_ends_at: datetime | None = None
    cancel_at_period_end: bool | None = None

    def changes(self) -> dict[str, Any]:
        """Return only the explicitly set fields as column values."""
        values: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            values[name] = value
        return values

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set
