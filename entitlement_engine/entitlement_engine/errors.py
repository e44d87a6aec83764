"""Exception hierarchy for the entitlement engine.

Billing event errors are rejected at the HTTP boundary.  Billing-provider
errors surface to the caller and leave stored state untouched.  Messaging
errors are recorded against the retention step that triggered them.
"""

from __future__ import annotations


class EntitlementError(Exception):
    """Base class for all engine errors."""


class EventParseError(EntitlementError):
    """A billing event envelope is missing required fields or is malformed."""


class UnsupportedEventError(EntitlementError):
    """A billing event type has no handler and strict mode is enabled."""

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unsupported billing event type: {event_type!r}")
        self.event_type = event_type


class BillingProviderError(EntitlementError):
    """The billing provider could not be reached or returned an error."""


class MessagingError(EntitlementError):
    """The messaging provider rejected or failed to deliver a message."""


class WebhookSignatureError(EntitlementError):
    """A webhook request failed provider signature verification."""
