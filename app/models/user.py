from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from uuid import UUID, uuid4


class SubscriptionPlan(str, enum.Enum):
    FREE = "free"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


# Delivery hour buckets offered by the onboarding wizard.
PREFERRED_TIMES: tuple[str, ...] = (
    "7:00 AM",
    "9:00 AM",
    "12:00 PM",
    "6:00 PM",
    "8:00 PM",
)
DEFAULT_PREFERRED_TIME = "9:00 AM"


def delivery_hour(preferred_time: str) -> int:
    """Hour of day (0-23) for a preferred time such as "6:00 PM"."""
    clock, _, meridiem = preferred_time.strip().partition(" ")
    hour_raw, _, _minutes = clock.partition(":")
    hour = int(hour_raw)
    meridiem = meridiem.upper()
    if meridiem == "PM" and hour != 12:
        hour += 12
    elif meridiem == "AM" and hour == 12:
        hour = 0
    if not 0 <= hour <= 23:
        raise ValueError(f"invalid preferred time {preferred_time!r}")
    return hour


def preferred_times_at_hour(hour: int) -> tuple[str, ...]:
    """The offered preferred times that fall in ``hour``."""
    return tuple(t for t in PREFERRED_TIMES if delivery_hour(t) == hour)


@dataclass(frozen=True, slots=True)
class User:
    id: UUID
    whatsapp_number: str  # canonical +2547XXXXXXXX
    name: str
    created_at: datetime.datetime
    updated_at: datetime.datetime
    email: str | None = None
    preferred_time: str = DEFAULT_PREFERRED_TIME
    subscription_plan: SubscriptionPlan = SubscriptionPlan.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    subscription_expires_at: datetime.datetime | None = None

    @staticmethod
    def new(
        *,
        whatsapp_number: str,
        name: str,
        now: datetime.datetime,
        email: str | None = None,
        preferred_time: str = DEFAULT_PREFERRED_TIME,
    ) -> User:
        return User(
            id=uuid4(),
            whatsapp_number=whatsapp_number,
            name=name,
            email=email,
            preferred_time=preferred_time,
            created_at=now,
            updated_at=now,
        )

    def is_subscription_current(self, now: datetime.datetime) -> bool:
        return self.subscription_expires_at is None or self.subscription_expires_at >= now

    def effective_status(self, now: datetime.datetime) -> SubscriptionStatus:
        # An active row whose expiry has passed is expired even before the
        # sweep rewrites it.
        if (
            self.subscription_status is SubscriptionStatus.ACTIVE
            and not self.is_subscription_current(now)
        ):
            return SubscriptionStatus.EXPIRED
        return self.subscription_status
