from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from app.core.errors import ChannelError
from app.services.whatsapp_client import WhatsAppChannel


def _channel(handler) -> WhatsAppChannel:
    return WhatsAppChannel(
        access_token="EAAG-test",
        phone_number_id="1098765",
        transport=httpx.MockTransport(handler),
    )


def test_send_posts_text_message() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.OUT1"}]})

    provider_id = asyncio.run(_channel(handler).send("+254722000111", "Karibu!"))

    assert provider_id == "wamid.OUT1"
    (request,) = seen
    assert request.url.path == "/v18.0/1098765/messages"
    assert request.headers["authorization"] == "Bearer EAAG-test"
    body = json.loads(request.content)
    assert body["to"] == "254722000111"
    assert body["type"] == "text"
    assert body["text"]["body"] == "Karibu!"


def test_send_raises_channel_error_on_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Invalid parameter"}})

    with pytest.raises(ChannelError, match="Invalid parameter"):
        asyncio.run(_channel(handler).send("+254722000111", "hi"))


def test_send_raises_channel_error_on_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ChannelError, match="request failed"):
        asyncio.run(_channel(handler).send("+254722000111", "hi"))


def test_send_tolerates_missing_message_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    assert asyncio.run(_channel(handler).send("+254722000111", "hi")) is None
