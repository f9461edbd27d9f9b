"""Send-and-record for every outbound WhatsApp message.

Every message the system sends goes through ``Notifier.notify``: it calls
the channel, then writes one OutboundMessage audit row whether or not the
send worked.  A channel failure is recorded as ``failed`` and logged, never
raised, so a dead WhatsApp endpoint cannot abort a payment confirmation or
a scheduler batch.  Ledger failures while writing the audit row do
propagate.
"""

from __future__ import annotations

import datetime
import logging

from app.core.errors import ChannelError
from app.core.metrics import MESSAGES_SENT
from app.models.message import DeliveryStatus, MessageType, OutboundMessage
from app.models.user import User
from app.repos.ledger import Ledger
from app.services import phone
from app.services.whatsapp_client import OutboundChannel

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class Notifier:
    def __init__(self, ledger: Ledger, channel: OutboundChannel, clock=_utcnow) -> None:
        self._ledger = ledger
        self._channel = channel
        self._clock = clock

    async def notify(
        self, user: User, message_type: MessageType, text: str
    ) -> OutboundMessage:
        provider_id: str | None = None
        try:
            provider_id = await self._channel.send(user.whatsapp_number, text)
            status = DeliveryStatus.SENT
        except ChannelError as e:
            status = DeliveryStatus.FAILED
            logger.warning(
                "WhatsApp send failed to %s: %s",
                phone.mask(user.whatsapp_number),
                e,
                extra={"user_id": str(user.id), "message_type": message_type.value},
            )

        MESSAGES_SENT.labels(message_type=message_type.value, status=status.value).inc()
        record = OutboundMessage.new(
            user_id=user.id,
            message_type=message_type,
            content=text,
            sent_at=self._clock(),
            delivery_status=status,
            provider_message_id=provider_id,
        )
        await self._ledger.log_message(record)
        return record
