"""Retention outreach policy: SMS steps and lifecycle email drips."""

from entitlement_engine.retention.drips import (
    DripEmail,
    DripRecipient,
    RenderedEmail,
    render_drip_email,
    select_drip_email,
)
from entitlement_engine.retention.policy import (
    RetentionStep,
    build_steps,
    first_name,
    is_activated,
    next_unsent_step,
    render_message,
    select_next_step,
)

__all__ = [
    "DripEmail",
    "DripRecipient",
    "RenderedEmail",
    "RetentionStep",
    "build_steps",
    "first_name",
    "is_activated",
    "next_unsent_step",
    "render_drip_email",
    "render_message",
    "select_drip_email",
    "select_next_step",
]
