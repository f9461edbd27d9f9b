"""Outbound WhatsApp channel.

The router, the orchestrator and the scheduler all send through the same
``OutboundChannel.send(address, text)``.  ``send`` returns the provider's
message id and raises ChannelError on any failure (HTTP error, timeout,
non-2xx).  Delivery receipts are not awaited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from app.core.errors import ChannelError
from app.services import phone

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.facebook.com/v18.0"


@runtime_checkable
class OutboundChannel(Protocol):
    async def send(self, address: str, text: str) -> str | None: ...


class WhatsAppChannel:
    """WhatsApp Cloud API text sender."""

    def __init__(
        self,
        *,
        access_token: str,
        phone_number_id: str,
        timeout: float = 15.0,
        base_url: str = GRAPH_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._phone_number_id = phone_number_id
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def send(self, address: str, text: str) -> str | None:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone.to_msisdn(address),
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            response = await self._http.post(
                f"/{self._phone_number_id}/messages", json=payload
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"WhatsApp request failed: {e}") from e

        if not response.is_success:
            try:
                detail = response.json().get("error", {}).get("message")
            except (ValueError, AttributeError):
                detail = None
            raise ChannelError(
                f"WhatsApp API error: {detail or 'Unknown error'} "
                f"(HTTP {response.status_code})"
            )

        try:
            return response.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError):
            return None


@dataclass(frozen=True, slots=True)
class SentMessage:
    address: str
    text: str


class InMemoryChannel:
    """Records messages instead of sending them (dev mode and tests)."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self._failing: set[str] = set()

    def fail_for(self, address: str) -> None:
        self._failing.add(address)

    async def send(self, address: str, text: str) -> str | None:
        if address in self._failing:
            raise ChannelError(f"simulated send failure to {phone.mask(address)}")
        self.sent.append(SentMessage(address=address, text=text))
        logger.debug("Recorded outbound message to %s", phone.mask(address))
        return f"local-{len(self.sent)}"

    def messages_to(self, address: str) -> list[str]:
        return [m.text for m in self.sent if m.address == address]
