"""Tests for the Twilio SMS client using an httpx mock transport."""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
from pydantic import SecretStr

from entitlement_api.config import APISettings
from entitlement_api.services.messaging import TwilioSmsClient


def _client(handler, **kwargs) -> TwilioSmsClient:
    return TwilioSmsClient(
        "AC123",
        SecretStr("twilio-token"),
        "+15550000000",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestSend:
    @pytest.mark.asyncio
    async def test_successful_send(self) -> None:
        captured: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["form"] = parse_qs(request.content.decode("utf-8"))
            captured["auth"] = request.headers.get("authorization")
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        client = _client(handler)
        result = await client.send("+15551234567", "Hey Acme, your site is waiting")
        await client.close()

        assert result.succeeded is True
        assert result.provider_ref == "SM42"
        assert result.error is None
        assert captured["path"] == "/2010-04-01/Accounts/AC123/Messages.json"
        assert captured["form"] == {
            "To": ["+15551234567"],
            "From": ["+15550000000"],
            "Body": ["Hey Acme, your site is waiting"],
        }
        assert str(captured["auth"]).startswith("Basic ")

    @pytest.mark.asyncio
    async def test_provider_error_is_reported_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        client = _client(handler)
        result = await client.send("+1", "hello")
        await client.close()

        assert result.succeeded is False
        assert "400" in (result.error or "")

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(handler)
        result = await client.send("+15551234567", "hello")
        await client.close()

        assert result.succeeded is False
        assert result.error == "Twilio request timed out"

    @pytest.mark.asyncio
    async def test_connection_error_is_reported(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        result = await client.send("+15551234567", "hello")
        await client.close()

        assert result.succeeded is False
        assert result.error is not None
        assert result.error.startswith("Twilio request failed")


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_missing_credentials_fail_without_request(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(201, json={"sid": "SM1"})

        client = TwilioSmsClient("", SecretStr(""), "", transport=httpx.MockTransport(handler))
        result = await client.send("+15551234567", "hello")
        await client.close()

        assert client.configured is False
        assert result.succeeded is False
        assert result.error == "Twilio credentials not configured"
        assert calls == []

    def test_from_settings(self) -> None:
        settings = APISettings(
            twilio_account_sid="AC999",
            twilio_auth_token=SecretStr("tok"),
            twilio_from_number="+15559999999",
        )
        assert TwilioSmsClient.from_settings(settings).configured is True
