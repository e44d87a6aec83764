"""Stripe billing provider collaborator.

Wraps the synchronous Stripe SDK behind async methods.  Every call runs in a
worker thread and is bounded by ``API_STRIPE_TIMEOUT_SECONDS``; SDK errors
and timeouts surface as :class:`BillingProviderError`.  Results are returned
as plain dicts so callers never depend on SDK object types.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from entitlement_engine.errors import BillingProviderError, EventParseError, WebhookSignatureError
from entitlement_engine.models.entitlement import Plan

from entitlement_api.config import APISettings

logger = logging.getLogger(__name__)

# Maximum age of a signed webhook payload, in seconds.
_SIGNATURE_TOLERANCE = 300


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert a Stripe SDK object (or plain mapping) to a plain dict.

    SDK objects convert themselves recursively, so nested lists and
    objects come back as plain lists and dicts too.
    """
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def plan_for_price(price_id: str | None, settings: APISettings) -> Plan | None:
    """Map a subscribed Stripe price id to a :class:`Plan`.

    Returns ``None`` when no price id is known.  An unrecognised price id
    maps to the monthly plan.
    """
    if not price_id:
        return None
    if settings.stripe_price_id_annual and price_id == settings.stripe_price_id_annual:
        return Plan.ANNUAL
    if settings.stripe_price_id_monthly and price_id != settings.stripe_price_id_monthly:
        logger.warning("Unrecognised Stripe price id %s; treating as monthly plan", price_id)
    return Plan.MONTHLY


class StripeBillingProvider:
    """Async facade over the Stripe SDK.

    Parameters
    ----------
    settings:
        API settings carrying the Stripe secret key, webhook secret and
        request timeout.
    """

    def __init__(self, settings: APISettings) -> None:
        self._settings = settings
        self._timeout = settings.stripe_timeout_seconds

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call in a thread with the configured timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self._timeout)
        except TimeoutError as exc:
            logger.warning("Stripe %s timed out after %.1fs", operation, self._timeout)
            raise BillingProviderError(f"Stripe {operation} timed out") from exc
        except Exception as exc:
            logger.warning("Stripe %s failed: %s", operation, exc)
            raise BillingProviderError(f"Stripe {operation} failed: {exc}") from exc

    # -- Webhooks ------------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and decode the event envelope.

        Raises
        ------
        WebhookSignatureError
            If the signature header is missing or does not match.
        EventParseError
            If the verified body is not a JSON object.
        """
        if not sig_header:
            raise WebhookSignatureError("Missing Stripe signature")
        secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            raise WebhookSignatureError("Stripe webhook secret is not configured")

        stripe = self._get_stripe()
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EventParseError("Webhook payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(body, sig_header, secret, _SIGNATURE_TOLERANCE)
        except Exception as exc:
            raise WebhookSignatureError(f"Signature verification failed: {exc}") from exc

        try:
            envelope = json.loads(body)
        except json.JSONDecodeError as exc:
            raise EventParseError("Webhook payload is not valid JSON") from exc
        if not isinstance(envelope, dict):
            raise EventParseError("Webhook payload must be a JSON object")
        return envelope

    # -- Customers -----------------------------------------------------------

    async def retrieve_customer(self, customer_ref: str) -> dict[str, Any] | None:
        """Return the customer, or ``None`` if it was deleted."""
        stripe = self._get_stripe()
        customer = _to_dict(await self._call("customer retrieve", stripe.Customer.retrieve, customer_ref))
        if customer.get("deleted"):
            return None
        return customer

    async def find_customer_by_email(self, email: str) -> dict[str, Any] | None:
        """Return the first customer registered with *email*, if any."""
        stripe = self._get_stripe()
        result = _to_dict(await self._call("customer lookup", stripe.Customer.list, email=email, limit=1))
        customers = result.get("data") or []
        return customers[0] if customers else None

    # -- Subscriptions -------------------------------------------------------

    async def list_subscriptions(self, customer_ref: str, limit: int = 10) -> list[dict[str, Any]]:
        """Return the customer's subscriptions in every status, newest first."""
        stripe = self._get_stripe()
        result = _to_dict(
            await self._call(
                "subscription list",
                stripe.Subscription.list,
                customer=customer_ref,
                status="all",
                limit=limit,
            )
        )
        return list(result.get("data") or [])

    async def cancel_subscription(self, subscription_ref: str, *, at_period_end: bool = True) -> dict[str, Any]:
        """Cancel a subscription now, or flag it to end with the current period."""
        stripe = self._get_stripe()
        if at_period_end:
            result = await self._call(
                "subscription cancel",
                stripe.Subscription.modify,
                subscription_ref,
                cancel_at_period_end=True,
            )
        else:
            result = await self._call("subscription cancel", stripe.Subscription.cancel, subscription_ref)
        logger.info("Canceled Stripe subscription %s (at_period_end=%s)", subscription_ref, at_period_end)
        return _to_dict(result)
