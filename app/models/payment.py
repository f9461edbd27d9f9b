from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from uuid import UUID, uuid4

from app.models.user import SubscriptionPlan


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


@dataclass(frozen=True, slots=True)
class Payment:
    """One checkout attempt.  Retries create new rows."""

    id: UUID
    user_id: UUID
    amount: int
    plan: SubscriptionPlan
    phone_number: str
    created_at: datetime.datetime
    updated_at: datetime.datetime
    currency: str = "KES"
    payment_method: str = "mpesa"
    status: PaymentStatus = PaymentStatus.PENDING
    merchant_request_id: str | None = None
    checkout_request_id: str | None = None
    mpesa_receipt_number: str | None = None
    result_desc: str | None = None

    @staticmethod
    def new(
        *,
        user_id: UUID,
        amount: int,
        plan: SubscriptionPlan,
        phone_number: str,
        now: datetime.datetime,
    ) -> Payment:
        return Payment(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            plan=plan,
            phone_number=phone_number,
            created_at=now,
            updated_at=now,
        )
