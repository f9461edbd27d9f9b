from __future__ import annotations

import asyncio
import datetime

import pytest

from app.models.message import DeliveryStatus, MessageType
from app.models.track import Lesson, Track
from app.models.user import SubscriptionPlan, SubscriptionStatus
from app.repos.ledger import InMemoryLedger
from app.services.lesson_scheduler import LessonScheduler
from app.services.notifier import Notifier
from app.services.whatsapp_client import InMemoryChannel
from tests.conftest import NOW, FakeClock, add_user

UTC = datetime.UTC
ALICE = "+254722000111"
BRIAN = "+254733000222"


class Harness:
    def __init__(self) -> None:
        self.ledger = InMemoryLedger()
        self.track = Track.new(
            slug="bookkeeping",
            name="Bookkeeping Basics",
            icon="📒",
            total_lessons=5,
            estimated_duration_weeks=1,
        )
        self.lessons = [
            Lesson.new(
                track_id=self.track.id,
                lesson_number=n,
                title=f"Bookkeeping Part {n}",
                content=f"Content {n}",
            )
            for n in range(1, 6)
        ]
        self.ledger.load_catalog([self.track], self.lessons)
        self.channel = InMemoryChannel()
        self.sleeps: list[float] = []
        clock = FakeClock()

        async def _sleep(seconds: float) -> None:
            self.sleeps.append(seconds)

        self.scheduler = LessonScheduler(
            self.ledger,
            Notifier(self.ledger, self.channel, clock=clock),
            timezone="Africa/Nairobi",
            concurrency=2,
            send_delay=1.0,
            clock=clock,
            sleep=_sleep,
        )

    async def subscriber(self, address: str = ALICE, **kwargs):
        user = await add_user(self.ledger, whatsapp_number=address, **kwargs)
        await self.ledger.enroll(user.id, self.track.id, NOW)
        return user

    async def complete(self, user, *numbers: int) -> None:
        for n in numbers:
            await self.ledger.record_lesson_completion(
                user.id, self.lessons[n - 1].id, now=NOW
            )


def _utc(hour: int, minute: int = 0, second: int = 0) -> datetime.datetime:
    return datetime.datetime(2025, 3, 10, hour, minute, second, tzinfo=UTC)


@pytest.mark.parametrize(
    ("now", "selected"),
    [
        (_utc(6, 0), True),  # 09:00 Nairobi
        (_utc(6, 59, 59), True),  # 09:59:59
        (_utc(5, 59, 59), False),  # 08:59:59
        (_utc(7, 0), False),  # 10:00
    ],
)
def test_selection_matches_preferred_hour_in_local_time(
    now: datetime.datetime, selected: bool
) -> None:
    h = Harness()

    async def _run():
        await h.subscriber(preferred_time="9:00 AM")
        return await h.scheduler.run(now)

    report = asyncio.run(_run())
    assert report.users_selected == (1 if selected else 0)
    assert len(h.channel.messages_to(ALICE)) == (1 if selected else 0)


def test_delivery_hour_uses_scheduler_timezone() -> None:
    h = Harness()
    assert h.scheduler.delivery_hour_at(_utc(17, 30)) == 20
    assert h.scheduler.delivery_hour_at(_utc(22, 0)) == 1


def test_sends_lowest_uncompleted_lesson_with_prior_progress() -> None:
    h = Harness()

    async def _run():
        user = await h.subscriber()
        await h.complete(user, 1, 3)
        return await h.scheduler.run(NOW)

    report = asyncio.run(_run())
    assert report.delivered == 1
    (text,) = h.channel.messages_to(ALICE)
    assert "Bookkeeping Part 2" in text
    assert "40% complete" in text
    assert [m.message_type for m in h.ledger.messages] == [MessageType.LESSON]


def test_run_does_not_record_completion() -> None:
    h = Harness()

    async def _run():
        await h.subscriber()
        await h.scheduler.run(NOW)
        await h.scheduler.run(NOW + datetime.timedelta(minutes=10))

    asyncio.run(_run())
    texts = h.channel.messages_to(ALICE)
    assert len(texts) == 2
    assert all("Bookkeeping Part 1" in t for t in texts)


def test_finished_track_sends_nothing() -> None:
    h = Harness()

    async def _run():
        user = await h.subscriber()
        await h.complete(user, 1, 2, 3, 4, 5)
        return await h.scheduler.run(NOW)

    report = asyncio.run(_run())
    assert report.finished == 1
    assert report.delivered == 0
    assert h.channel.sent == []


def test_paused_and_lapsed_users_are_skipped() -> None:
    h = Harness()

    async def _run():
        await h.subscriber(ALICE, status=SubscriptionStatus.INACTIVE)
        await h.subscriber(BRIAN, expires_at=NOW - datetime.timedelta(minutes=1))
        report = await h.scheduler.run(NOW)
        return report, await h.ledger.get_user_by_address(BRIAN)

    report, brian = asyncio.run(_run())
    assert report.expired == 1
    assert report.users_selected == 0
    assert brian.subscription_status is SubscriptionStatus.EXPIRED
    assert h.channel.sent == []


def test_null_expiry_counts_as_current() -> None:
    h = Harness()

    async def _run():
        await h.subscriber(expires_at=None)
        return await h.scheduler.run(NOW)

    assert asyncio.run(_run()).delivered == 1


def test_one_failing_send_does_not_stop_the_batch() -> None:
    h = Harness()
    h.channel.fail_for(ALICE)

    async def _run():
        await h.subscriber(ALICE)
        await h.subscriber(BRIAN, name="Brian")
        return await h.scheduler.run(NOW)

    report = asyncio.run(_run())
    assert report.failed == 1
    assert report.delivered == 1
    assert len(h.channel.messages_to(BRIAN)) == 1
    statuses = sorted(m.delivery_status.value for m in h.ledger.messages)
    assert statuses == [DeliveryStatus.FAILED.value, DeliveryStatus.SENT.value]


def test_missing_track_is_a_per_unit_failure() -> None:
    h = Harness()
    orphan = Track.new(
        slug="retired", name="Retired Track", icon="🗄️", total_lessons=3, estimated_duration_weeks=1
    )
    h.ledger.load_catalog([orphan], [])

    async def _run():
        alice = await h.subscriber(ALICE)
        await h.ledger.enroll(alice.id, orphan.id, NOW)
        h.ledger._tracks.pop(orphan.id)
        await h.subscriber(BRIAN, name="Brian")
        return await h.scheduler.run(NOW)

    report = asyncio.run(_run())
    assert report.failed == 1
    assert report.delivered == 2
    assert len(h.channel.messages_to(ALICE)) == 1
    assert len(h.channel.messages_to(BRIAN)) == 1


def test_pacing_delay_after_each_send() -> None:
    h = Harness()

    async def _run():
        await h.subscriber(ALICE)
        await h.subscriber(BRIAN, name="Brian")
        await h.scheduler.run(NOW)

    asyncio.run(_run())
    assert h.sleeps == [1.0, 1.0]


def test_renewal_reminder_for_paid_plan_lapsing_within_a_day() -> None:
    h = Harness()

    async def _run():
        await h.subscriber(ALICE, expires_at=NOW + datetime.timedelta(hours=12))
        await h.subscriber(
            BRIAN,
            plan=SubscriptionPlan.FREE,
            expires_at=NOW + datetime.timedelta(hours=12),
        )
        await h.subscriber(
            "+254744000333", expires_at=NOW + datetime.timedelta(days=3)
        )
        return await h.scheduler.run(NOW)

    report = asyncio.run(_run())
    assert report.reminders == 1
    reminders = [m for m in h.ledger.messages if m.message_type is MessageType.REMINDER]
    assert len(reminders) == 1
    assert "KES 50" in reminders[0].content
    assert any("Payment Reminder" in t for t in h.channel.messages_to(ALICE))

