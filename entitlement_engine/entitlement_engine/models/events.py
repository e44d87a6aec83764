"""Billing provider event envelope parsing.

Inbound webhook envelopes are parsed into a closed set of event variants.
Every known provider event type maps to exactly one variant; anything else
becomes :class:`UnknownEvent` so the reconciler can decide, explicitly,
whether to ignore it or fail loudly.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from entitlement_engine.errors import EventParseError

# Metadata key set on checkout sessions and subscriptions at creation time.
TENANT_METADATA_KEY = "tenant_id"


class BillingEventBase(BaseModel):
    """Fields common to every billing event variant."""

    event_id: str = Field(..., min_length=1, description="Provider-assigned unique event id.")
    event_type: str = Field(..., description="Raw provider event type string.")
    occurred_at: datetime | None = Field(default=None, description="Provider event creation time.")
    customer_ref: str | None = Field(default=None, description="Billing customer id on the payload.")
    metadata_tenant_id: str | None = Field(default=None, description="Tenant id embedded in payload metadata.")
    customer_email: str | None = Field(default=None, description="Customer email carried on the payload, if any.")


class CheckoutCompleted(BillingEventBase):
    """``checkout.session.completed``: identity linking only."""


class SubscriptionChanged(BillingEventBase):
    """``customer.subscription.created`` / ``customer.subscription.updated``."""

    subscription_ref: str
    status: str
    price_id: str | None = None
    trial_ends_at: datetime | None = None
    period_ends_at: datetime | None = None
    cancel_at_period_end: bool = False


class SubscriptionDeleted(BillingEventBase):
    """``customer.subscription.deleted``."""

    subscription_ref: str | None = None


class InvoicePaymentSucceeded(BillingEventBase):
    """``invoice.payment_succeeded`` (and the equivalent ``invoice.paid``)."""

    invoice_ref: str | None = None


class InvoicePaymentFailed(BillingEventBase):
    """``invoice.payment_failed``."""

    invoice_ref: str | None = None


class UnknownEvent(BillingEventBase):
    """Any event type without a dedicated variant."""


BillingEvent = (
    CheckoutCompleted
    | SubscriptionChanged
    | SubscriptionDeleted
    | InvoicePaymentSucceeded
    | InvoicePaymentFailed
    | UnknownEvent
)


def parse_timestamp(value: Any) -> datetime | None:
    """Convert a provider epoch-seconds value to an aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError) as exc:
        raise EventParseError(f"Invalid timestamp value: {value!r}") from exc


def _ref(value: Any) -> str | None:
    """Return an object id whether the provider sent it expanded or not."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price_id(subscription: dict[str, Any]) -> str | None:
    """Price id of the first subscription item, if any."""
    return (_first_item(subscription).get("price") or {}).get("id")


def subscription_period_end(subscription: dict[str, Any]) -> datetime | None:
    """End of the current billing period.

    Newer API versions carry the period on the subscription item rather
    than on the subscription itself.
    """
    value = subscription.get("current_period_end") or _first_item(subscription).get("current_period_end")
    return parse_timestamp(value)


def _common(envelope: dict[str, Any], obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata") or {}
    details = obj.get("customer_details") or {}
    return {
        "event_id": envelope["id"],
        "event_type": envelope["type"],
        "occurred_at": parse_timestamp(envelope.get("created")),
        "customer_ref": _ref(obj.get("customer")),
        "metadata_tenant_id": metadata.get(TENANT_METADATA_KEY) or None,
        "customer_email": obj.get("customer_email") or details.get("email") or None,
    }


def _parse_checkout(envelope: dict[str, Any], obj: dict[str, Any]) -> BillingEvent:
    return CheckoutCompleted(**_common(envelope, obj))


def _parse_subscription_changed(envelope: dict[str, Any], obj: dict[str, Any]) -> BillingEvent:
    subscription_ref = obj.get("id")
    status = obj.get("status")
    if not subscription_ref or not status:
        raise EventParseError(f"Subscription event {envelope['id']} is missing id or status")

    return SubscriptionChanged(
        **_common(envelope, obj),
        subscription_ref=subscription_ref,
        status=status,
        price_id=subscription_price_id(obj),
        trial_ends_at=parse_timestamp(obj.get("trial_end")),
        period_ends_at=subscription_period_end(obj),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
    )


def _parse_subscription_deleted(envelope: dict[str, Any], obj: dict[str, Any]) -> BillingEvent:
    return SubscriptionDeleted(**_common(envelope, obj), subscription_ref=obj.get("id"))


def _parse_invoice_succeeded(envelope: dict[str, Any], obj: dict[str, Any]) -> BillingEvent:
    return InvoicePaymentSucceeded(**_common(envelope, obj), invoice_ref=obj.get("id"))


def _parse_invoice_failed(envelope: dict[str, Any], obj: dict[str, Any]) -> BillingEvent:
    return InvoicePaymentFailed(**_common(envelope, obj), invoice_ref=obj.get("id"))


_PARSERS = {
    "checkout.session.completed": _parse_checkout,
    "customer.subscription.created": _parse_subscription_changed,
    "customer.subscription.updated": _parse_subscription_changed,
    "customer.subscription.deleted": _parse_subscription_deleted,
    "invoice.payment_succeeded": _parse_invoice_succeeded,
    "invoice.paid": _parse_invoice_succeeded,
    "invoice.payment_failed": _parse_invoice_failed,
}

SUPPORTED_EVENT_TYPES: frozenset[str] = frozenset(_PARSERS)


def parse_billing_event(envelope: dict[str, Any]) -> BillingEvent:
    """Parse a raw provider event envelope into a billing event variant.

    Parameters
    ----------
    envelope:
        Decoded JSON body of the webhook request (``id``, ``type``,
        ``created``, ``data.object``).

    Returns
    -------
    BillingEvent
        The matching variant, or :class:`UnknownEvent` for unsupported types.

    Raises
    ------
    EventParseError
        If the envelope has no event id or type, or the payload is malformed.
    """
    if not isinstance(envelope, dict):
        raise EventParseError("Event envelope must be a JSON object")
    if not envelope.get("id"):
        raise EventParseError("Event envelope is missing the provider event id")
    if not envelope.get("type"):
        raise EventParseError(f"Event {envelope['id']} is missing a type")

    obj = (envelope.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise EventParseError(f"Event {envelope['id']} has no data.object payload")

    parser = _PARSERS.get(envelope["type"])
    if parser is None:
        return UnknownEvent(**_common(envelope, obj))
    return parser(envelope, obj)
