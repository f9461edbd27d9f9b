"""Subscription plan catalog and the expiry law.

The free-trial short-circuit and the M-Pesa callback both compute expiry
through :func:`compute_expiry`, so one plan name always buys the same
length of subscription.
"""

from __future__ import annotations

import calendar
import datetime
from dataclasses import dataclass

from app.models.user import SubscriptionPlan


@dataclass(frozen=True, slots=True)
class PlanOffer:
    plan: SubscriptionPlan
    title: str
    amount: int  # KES
    period: str


PLAN_CATALOG: dict[SubscriptionPlan, PlanOffer] = {
    SubscriptionPlan.FREE: PlanOffer(SubscriptionPlan.FREE, "Free Trial", 0, "3 days"),
    SubscriptionPlan.WEEKLY: PlanOffer(
        SubscriptionPlan.WEEKLY, "Weekly Plan", 50, "per week"
    ),
    SubscriptionPlan.MONTHLY: PlanOffer(
        SubscriptionPlan.MONTHLY, "Monthly Premium", 150, "per month"
    ),
}

# Display names used by the pricing page map onto plan codes.
_ALIASES: dict[str, SubscriptionPlan] = {
    "free": SubscriptionPlan.FREE,
    "free trial": SubscriptionPlan.FREE,
    "weekly": SubscriptionPlan.WEEKLY,
    "weekly plan": SubscriptionPlan.WEEKLY,
    "monthly": SubscriptionPlan.MONTHLY,
    "monthly premium": SubscriptionPlan.MONTHLY,
}


def resolve_plan(name: str | SubscriptionPlan) -> SubscriptionPlan | None:
    if isinstance(name, SubscriptionPlan):
        return name
    return _ALIASES.get(name.strip().lower())


def plan_offer(plan: SubscriptionPlan) -> PlanOffer:
    return PLAN_CATALOG[plan]


def add_calendar_month(moment: datetime.datetime) -> datetime.datetime:
    """Same day-of-month next month, clamped to that month's last day."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


def compute_expiry(
    plan: str | SubscriptionPlan, now: datetime.datetime
) -> datetime.datetime:
    """Subscription expiry for ``plan`` bought at ``now``.

    weekly  -> now + 7 days
    monthly -> same day next calendar month (Jan 31 -> Feb 28/29)
    free    -> now + 3 days
    unknown -> now + 7 days
    """
    resolved = plan if isinstance(plan, SubscriptionPlan) else _ALIASES.get(
        plan.strip().lower()
    )
    if resolved is SubscriptionPlan.MONTHLY:
        return add_calendar_month(now)
    if resolved is SubscriptionPlan.FREE:
        return now + datetime.timedelta(days=3)
    return now + datetime.timedelta(days=7)
