from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from uuid import UUID, uuid4


class MessageType(str, enum.Enum):
    LESSON = "lesson"
    WELCOME = "welcome"
    REMINDER = "reminder"
    PAYMENT = "payment"
    RESPONSE = "response"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    """Audit record of one outbound WhatsApp message.  Write-only."""

    id: UUID
    user_id: UUID
    message_type: MessageType
    content: str
    sent_at: datetime.datetime
    delivery_status: DeliveryStatus
    provider_message_id: str | None = None

    @staticmethod
    def new(
        *,
        user_id: UUID,
        message_type: MessageType,
        content: str,
        sent_at: datetime.datetime,
        delivery_status: DeliveryStatus,
        provider_message_id: str | None = None,
    ) -> OutboundMessage:
        return OutboundMessage(
            id=uuid4(),
            user_id=user_id,
            message_type=message_type,
            content=content,
            sent_at=sent_at,
            delivery_status=delivery_status,
            provider_message_id=provider_message_id,
        )
