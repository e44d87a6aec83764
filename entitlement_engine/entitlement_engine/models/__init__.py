"""Domain models for the entitlement engine."""

from entitlement_engine.models.entitlement import (
    EntitlementSnapshot,
    EntitlementUpdate,
    Phase,
    Plan,
)
from entitlement_engine.models.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnknownEvent,
    parse_billing_event,
)

__all__ = [
    "BillingEvent",
    "CheckoutCompleted",
    "EntitlementSnapshot",
    "EntitlementUpdate",
    "InvoicePaymentFailed",
    "InvoicePaymentSucceeded",
    "Phase",
    "Plan",
    "SubscriptionChanged",
    "SubscriptionDeleted",
    "UnknownEvent",
    "parse_billing_event",
]
