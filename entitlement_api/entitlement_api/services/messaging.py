"""Twilio SMS client for retention messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from entitlement_engine.errors import MessagingError
from pydantic import SecretStr

from entitlement_api.config import APISettings

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one send attempt."""

    succeeded: bool
    error: str | None = None
    provider_ref: str | None = None


class TwilioSmsClient:
    """Thin async wrapper around the Twilio Messages REST endpoint.

    :meth:`send` never raises for provider failures; it reports them in the
    returned :class:`DeliveryResult` so the caller can record the attempt.

    Parameters
    ----------
    account_sid:
        Twilio account SID (also the basic-auth username).
    auth_token:
        Twilio auth token.
    from_number:
        Sender phone number in E.164 form.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, used by tests to stub the network.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: SecretStr,
        from_number: str,
        timeout: float = 10.0,
        *,
        base_url: str = TWILIO_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._from_number = from_number
        self._configured = bool(account_sid and auth_token.get_secret_value() and from_number)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            auth=(account_sid, auth_token.get_secret_value()) if self._configured else None,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: APISettings) -> TwilioSmsClient:
        return cls(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_from_number,
            timeout=settings.messaging_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        """Whether credentials and a sender number are present."""
        return self._configured

    async def send(self, destination: str, body: str) -> DeliveryResult:
        """Send *body* to *destination* and report the outcome."""
        if not self._configured:
            return DeliveryResult(succeeded=False, error="Twilio credentials not configured")
        try:
            message_sid = await self._deliver(destination, body)
        except MessagingError as exc:
            logger.warning("SMS to %s failed: %s", _mask(destination), exc)
            return DeliveryResult(succeeded=False, error=str(exc))
        logger.info("SMS sent to %s (sid=%s)", _mask(destination), message_sid)
        return DeliveryResult(succeeded=True, provider_ref=message_sid)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _deliver(self, destination: str, body: str) -> str | None:
        path = f"/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        try:
            response = await self._client.post(
                path,
                data={"To": destination, "From": self._from_number, "Body": body},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MessagingError(
                f"Twilio returned {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise MessagingError("Twilio request timed out") from exc
        except httpx.RequestError as exc:
            raise MessagingError(f"Twilio request failed: {exc}") from exc

        try:
            return response.json().get("sid")
        except ValueError:
            return None


def _mask(phone: str) -> str:
    """Keep only the last four digits of a phone number for logs."""
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"
