"""Resend client for lifecycle drip emails."""

from __future__ import annotations

import logging

import httpx
from entitlement_engine.errors import MessagingError
from pydantic import SecretStr

from entitlement_api.config import APISettings
from entitlement_api.services.messaging import DeliveryResult

logger = logging.getLogger(__name__)

RESEND_API_BASE = "https://api.resend.com"


class ResendEmailClient:
    """Async wrapper around the Resend ``/emails`` endpoint.

    Like :class:`~entitlement_api.services.messaging.TwilioSmsClient`,
    :meth:`send` reports provider failures in the returned
    :class:`DeliveryResult` rather than raising.

    Parameters
    ----------
    api_key:
        Resend API key, sent as a bearer token.
    from_address:
        ``From`` header, e.g. ``"Darker <onboarding@resend.dev>"``.
    reply_to:
        Optional ``Reply-To`` address.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, used by tests to stub the network.
    """

    def __init__(
        self,
        api_key: SecretStr,
        from_address: str,
        reply_to: str | None = None,
        timeout: float = 10.0,
        *,
        base_url: str = RESEND_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._from_address = from_address
        self._reply_to = reply_to or None
        self._configured = bool(api_key.get_secret_value() and from_address)
        headers = {"Authorization": f"Bearer {api_key.get_secret_value()}"} if self._configured else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: APISettings) -> ResendEmailClient:
        return cls(
            settings.resend_api_key,
            settings.email_from,
            settings.email_reply_to,
            timeout=settings.email_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        """Whether an API key and a sender address are present."""
        return self._configured

    async def send(self, to: str, subject: str, html: str) -> DeliveryResult:
        """Send one HTML email to *to* and report the outcome."""
        if not self._configured:
            return DeliveryResult(succeeded=False, error="Resend API key not configured")
        try:
            email_id = await self._deliver(to, subject, html)
        except MessagingError as exc:
            logger.warning("Email to %s failed: %s", _mask(to), exc)
            return DeliveryResult(succeeded=False, error=str(exc))
        logger.info("Email sent to %s (id=%s)", _mask(to), email_id)
        return DeliveryResult(succeeded=True, provider_ref=email_id)

    async def close(self) -> None:
        await self._client.aclose()

    async def _deliver(self, to: str, subject: str, html: str) -> str | None:
        payload: dict[str, object] = {
            "from": self._from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if self._reply_to:
            payload["reply_to"] = self._reply_to
        try:
            response = await self._client.post("/emails", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MessagingError(
                f"Resend returned {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise MessagingError("Resend request timed out") from exc
        except httpx.RequestError as exc:
            raise MessagingError(f"Resend request failed: {exc}") from exc

        try:
            return response.json().get("id")
        except ValueError:
            return None


def _mask(address: str) -> str:
    """Keep the first character of the local part and the domain."""
    local, sep, domain = address.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
