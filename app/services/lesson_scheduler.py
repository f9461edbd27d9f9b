"""Lesson Scheduler: one batch per hour, one lesson per active enrollment.

A run does, in order:

  1. expire sweep      active users whose expiry has passed become expired
  2. selection         active, expiry null or >= now, and preferred hour ==
                       the current hour in SCHEDULER_TIMEZONE
  3. dispatch          for every (user x active enrollment): the lowest
                       numbered lesson with no completion record is sent
                       with the progress as of before that lesson
  4. reminders         selected users on a paid plan that lapses within
                       24h get one renewal reminder

Users are served concurrently under a semaphore; one user's enrollments
run sequentially with a pacing delay after each send, which keeps the
WhatsApp API under its per-number rate.  A failing unit (ledger error,
missing track) is logged and counted; the rest of the batch carries on.

The scheduler never records completion.  Running it twice in the same
hour resends the same lesson.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import time
from dataclasses import dataclass
from uuid import uuid4
from zoneinfo import ZoneInfo

from app.core.errors import LedgerError
from app.core.metrics import LESSONS_DISPATCHED, SCHEDULER_RUN_DURATION
from app.models.message import DeliveryStatus, MessageType
from app.models.track import UserTrack, progress_percent
from app.models.user import SubscriptionPlan, User
from app.repos.ledger import Ledger
from app.services import messages
from app.services.notifier import Notifier
from app.services.plans import plan_offer

logger = logging.getLogger(__name__)

REMINDER_WINDOW = datetime.timedelta(hours=24)


@dataclass
class SchedulerReport:
    run_id: str
    run_at: datetime.datetime
    hour: int
    expired: int = 0
    users_selected: int = 0
    delivered: int = 0
    finished: int = 0
    failed: int = 0
    reminders: int = 0


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class LessonScheduler:
    def __init__(
        self,
        ledger: Ledger,
        notifier: Notifier,
        *,
        timezone: str = "Africa/Nairobi",
        concurrency: int = 4,
        send_delay: float = 1.0,
        clock=_utcnow,
        sleep=asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier
        self._tz = ZoneInfo(timezone)
        self._concurrency = concurrency
        self._send_delay = send_delay
        self._clock = clock
        self._sleep = sleep

    def delivery_hour_at(self, now: datetime.datetime) -> int:
        return now.astimezone(self._tz).hour

    async def run(self, now: datetime.datetime | None = None) -> SchedulerReport:
        now = now or self._clock()
        started = time.perf_counter()
        report = SchedulerReport(
            run_id=uuid4().hex[:12], run_at=now, hour=self.delivery_hour_at(now)
        )
        log_extra = {"run_id": report.run_id}

        report.expired = await self._ledger.expire_lapsed_subscriptions(now)
        users = await self._ledger.list_active_users_at_hour(report.hour, now)
        report.users_selected = len(users)
        logger.info(
            "Scheduler run: %d expired, %d users at hour %d",
            report.expired,
            report.users_selected,
            report.hour,
            extra=log_extra,
        )

        semaphore = asyncio.Semaphore(self._concurrency)
        await asyncio.gather(
            *(self._serve_user(user, now, semaphore, report) for user in users)
        )

        SCHEDULER_RUN_DURATION.observe(time.perf_counter() - started)
        logger.info(
            "Scheduler run done: delivered=%d finished=%d failed=%d reminders=%d",
            report.delivered,
            report.finished,
            report.failed,
            report.reminders,
            extra=log_extra,
        )
        return report

    async def _serve_user(
        self,
        user: User,
        now: datetime.datetime,
        semaphore: asyncio.Semaphore,
        report: SchedulerReport,
    ) -> None:
        async with semaphore:
            log_extra = {"run_id": report.run_id, "user_id": str(user.id)}
            try:
                enrollments = await self._ledger.list_active_enrollments(user.id)
            except Exception:
                logger.exception("Could not load enrollments", extra=log_extra)
                self._count(report, "failed")
                return

            for enrollment in enrollments:
                try:
                    result = await self._dispatch(user, enrollment)
                except Exception:
                    logger.exception(
                        "Lesson dispatch failed for track %s",
                        enrollment.track_id,
                        extra=log_extra,
                    )
                    result = "failed"
                self._count(report, result)

            try:
                if await self._remind(user, now):
                    report.reminders += 1
            except Exception:
                logger.exception("Renewal reminder failed", extra=log_extra)

    async def _dispatch(self, user: User, enrollment: UserTrack) -> str:
        track = await self._ledger.get_track(enrollment.track_id)
        if track is None:
            raise LedgerError(f"track {enrollment.track_id} not found")

        done = await self._ledger.completed_lesson_ids(user.id, track.id)
        lesson = await self._ledger.next_lesson(track.id, done)
        if lesson is None:
            return "finished"

        progress = progress_percent(len(done), track.total_lessons)
        record = await self._notifier.notify(
            user,
            MessageType.LESSON,
            messages.daily_lesson(lesson, track.name, progress),
        )
        await self._sleep(self._send_delay)
        if record.delivery_status is DeliveryStatus.FAILED:
            return "failed"
        return "delivered"

    async def _remind(self, user: User, now: datetime.datetime) -> bool:
        expires_at = user.subscription_expires_at
        if user.subscription_plan is SubscriptionPlan.FREE or expires_at is None:
            return False
        if not now <= expires_at <= now + REMINDER_WINDOW:
            return False
        offer = plan_offer(user.subscription_plan)
        await self._notifier.notify(
            user,
            MessageType.REMINDER,
            messages.renewal_reminder(user.name, offer.title, offer.amount),
        )
        return True

    @staticmethod
    def _count(report: SchedulerReport, result: str) -> None:
        LESSONS_DISPATCHED.labels(result=result).inc()
        setattr(report, result, getattr(report, result) + 1)
