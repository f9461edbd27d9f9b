"""Subscription Ledger: the only owner of User, Track, Payment, progress
and outbound-message persistence.

Three entry points hit the ledger concurrently: provider callbacks,
inbound WhatsApp messages and the scheduler batch.  Status transitions are
therefore compare-and-set: ``transition_payment`` and
``set_subscription_status`` take the state the caller expects and return
False when the row has moved on.  A duplicate M-Pesa callback loses the
``pending -> completed`` race and does nothing.

InMemoryLedger is used when DATABASE_URL is unset (dev, tests).  One
asyncio.Lock serializes its mutations, which gives the same per-row
atomicity PgLedger gets from ``UPDATE ... WHERE status = :expected``.
"""

from __future__ import annotations

import asyncio
import datetime
from collections.abc import Collection, Iterable
from dataclasses import replace
from typing import Protocol
from uuid import UUID

from app.core.errors import LedgerError
from app.models.message import OutboundMessage
from app.models.payment import Payment, PaymentStatus
from app.models.track import Lesson, LessonProgress, Track, UserTrack, progress_percent
from app.models.user import SubscriptionPlan, SubscriptionStatus, User, delivery_hour


class Ledger(Protocol):
    # --- users ---
    async def get_user(self, user_id: UUID) -> User | None: ...
    async def get_user_by_address(self, whatsapp_number: str) -> User | None: ...
    async def upsert_user(self, user: User) -> User: ...
    async def update_subscription(
        self,
        user_id: UUID,
        *,
        plan: SubscriptionPlan,
        status: SubscriptionStatus,
        expires_at: datetime.datetime | None,
        now: datetime.datetime,
    ) -> User: ...
    async def set_subscription_status(
        self,
        user_id: UUID,
        status: SubscriptionStatus,
        *,
        expected: Collection[SubscriptionStatus],
        now: datetime.datetime,
    ) -> bool: ...
    async def expire_lapsed_subscriptions(self, now: datetime.datetime) -> int: ...
    async def list_active_users_at_hour(
        self, hour: int, now: datetime.datetime
    ) -> list[User]: ...

    # --- catalog and enrollment ---
    async def list_tracks(self) -> list[Track]: ...
    async def get_track(self, track_id: UUID) -> Track | None: ...
    async def get_track_by_slug(self, slug: str) -> Track | None: ...
    async def enroll(
        self, user_id: UUID, track_id: UUID, now: datetime.datetime
    ) -> UserTrack: ...
    async def list_active_enrollments(self, user_id: UUID) -> list[UserTrack]: ...

    # --- lessons and progress ---
    async def completed_lesson_ids(
        self, user_id: UUID, track_id: UUID | None = None
    ) -> set[UUID]: ...
    async def next_lesson(
        self, track_id: UUID, excluding: Collection[UUID]
    ) -> Lesson | None: ...
    async def record_lesson_completion(
        self,
        user_id: UUID,
        lesson_id: UUID,
        *,
        now: datetime.datetime,
        quiz_score: int | None = None,
    ) -> LessonProgress: ...

    # --- payments ---
    async def create_payment(self, payment: Payment) -> Payment: ...
    async def attach_payment_correlation(
        self,
        payment_id: UUID,
        *,
        merchant_request_id: str | None,
        checkout_request_id: str,
        now: datetime.datetime,
    ) -> Payment: ...
    async def get_payment(self, payment_id: UUID) -> Payment | None: ...
    async def get_payment_by_checkout_id(
        self, checkout_request_id: str
    ) -> Payment | None: ...
    async def transition_payment(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        *,
        now: datetime.datetime,
        expected: PaymentStatus = PaymentStatus.PENDING,
        receipt_number: str | None = None,
        result_desc: str | None = None,
    ) -> bool: ...

    # --- audit ---
    async def log_message(self, message: OutboundMessage) -> None: ...


class InMemoryLedger:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._users: dict[UUID, User] = {}
        self._by_address: dict[str, UUID] = {}
        self._tracks: dict[UUID, Track] = {}
        self._lessons: dict[UUID, Lesson] = {}
        self._enrollments: dict[UUID, UserTrack] = {}
        self._progress: list[LessonProgress] = []
        self._payments: dict[UUID, Payment] = {}
        self._by_checkout: dict[str, UUID] = {}
        self.messages: list[OutboundMessage] = []

    # ------------------------------------------------------------------
    # Seeding (reference data comes from the external catalog)
    # ------------------------------------------------------------------

    def load_catalog(self, tracks: Iterable[Track], lessons: Iterable[Lesson]) -> None:
        for track in tracks:
            self._tracks[track.id] = track
        for lesson in lessons:
            if lesson.track_id not in self._tracks:
                raise LedgerError(f"lesson {lesson.id} references unknown track")
            self._lessons[lesson.id] = lesson

    def clear(self) -> None:
        """Drop all non-catalog state."""
        self._users.clear()
        self._by_address.clear()
        self._enrollments.clear()
        self._progress.clear()
        self._payments.clear()
        self._by_checkout.clear()
        self.messages.clear()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _require_user(self, user_id: UUID) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise LedgerError(f"user {user_id} not found")
        return user

    async def get_user(self, user_id: UUID) -> User | None:
        return self._users.get(user_id)

    async def get_user_by_address(self, whatsapp_number: str) -> User | None:
        user_id = self._by_address.get(whatsapp_number)
        return self._users.get(user_id) if user_id is not None else None

    async def upsert_user(self, user: User) -> User:
        """Insert, or update profile fields of the user with the same address.

        Subscription fields of an existing user are left alone; they only
        change through update_subscription / set_subscription_status.
        """
        async with self._lock:
            existing_id = self._by_address.get(user.whatsapp_number)
            if existing_id is None:
                self._users[user.id] = user
                self._by_address[user.whatsapp_number] = user.id
                return user

            existing = self._users[existing_id]
            updated = replace(
                existing,
                name=user.name,
                email=user.email if user.email is not None else existing.email,
                preferred_time=user.preferred_time,
                updated_at=user.updated_at,
            )
            self._users[existing_id] = updated
            return updated

    async def update_subscription(
        self,
        user_id: UUID,
        *,
        plan: SubscriptionPlan,
        status: SubscriptionStatus,
        expires_at: datetime.datetime | None,
        now: datetime.datetime,
    ) -> User:
        async with self._lock:
            user = self._require_user(user_id)
            updated = replace(
                user,
                subscription_plan=plan,
                subscription_status=status,
                subscription_expires_at=expires_at,
                updated_at=now,
            )
            self._users[user_id] = updated
            return updated

    async def set_subscription_status(
        self,
        user_id: UUID,
        status: SubscriptionStatus,
        *,
        expected: Collection[SubscriptionStatus],
        now: datetime.datetime,
    ) -> bool:
        async with self._lock:
            user = self._require_user(user_id)
            if user.subscription_status not in expected:
                return False
            self._users[user_id] = replace(
                user, subscription_status=status, updated_at=now
            )
            return True

    async def expire_lapsed_subscriptions(self, now: datetime.datetime) -> int:
        async with self._lock:
            lapsed = [
                u
                for u in self._users.values()
                if u.subscription_status is SubscriptionStatus.ACTIVE
                and not u.is_subscription_current(now)
            ]
            for u in lapsed:
                self._users[u.id] = replace(
                    u, subscription_status=SubscriptionStatus.EXPIRED, updated_at=now
                )
            return len(lapsed)

    async def list_active_users_at_hour(
        self, hour: int, now: datetime.datetime
    ) -> list[User]:
        return [
            u
            for u in self._users.values()
            if u.subscription_status is SubscriptionStatus.ACTIVE
            and u.is_subscription_current(now)
            and delivery_hour(u.preferred_time) == hour
        ]

    # ------------------------------------------------------------------
    # Catalog and enrollment
    # ------------------------------------------------------------------

    async def list_tracks(self) -> list[Track]:
        return sorted(self._tracks.values(), key=lambda t: t.name)

    async def get_track(self, track_id: UUID) -> Track | None:
        return self._tracks.get(track_id)

    async def get_track_by_slug(self, slug: str) -> Track | None:
        return next((t for t in self._tracks.values() if t.slug == slug), None)

    async def enroll(
        self, user_id: UUID, track_id: UUID, now: datetime.datetime
    ) -> UserTrack:
        """Idempotent: re-enrolling reactivates the existing enrollment."""
        async with self._lock:
            self._require_user(user_id)
            if track_id not in self._tracks:
                raise LedgerError(f"track {track_id} not found")
            for ut in self._enrollments.values():
                if ut.user_id == user_id and ut.track_id == track_id:
                    if not ut.is_active:
                        ut = replace(ut, is_active=True)
                        self._enrollments[ut.id] = ut
                    return ut
            enrollment = UserTrack.new(user_id=user_id, track_id=track_id, now=now)
            self._enrollments[enrollment.id] = enrollment
            return enrollment

    async def list_active_enrollments(self, user_id: UUID) -> list[UserTrack]:
        return sorted(
            (
                ut
                for ut in self._enrollments.values()
                if ut.user_id == user_id and ut.is_active
            ),
            key=lambda ut: ut.started_at,
        )

    # ------------------------------------------------------------------
    # Lessons and progress
    # ------------------------------------------------------------------

    async def completed_lesson_ids(
        self, user_id: UUID, track_id: UUID | None = None
    ) -> set[UUID]:
        return {
            p.lesson_id
            for p in self._progress
            if p.user_id == user_id
            and (track_id is None or self._lessons[p.lesson_id].track_id == track_id)
        }

    async def next_lesson(
        self, track_id: UUID, excluding: Collection[UUID]
    ) -> Lesson | None:
        remaining = [
            lesson
            for lesson in self._lessons.values()
            if lesson.track_id == track_id and lesson.id not in excluding
        ]
        return min(remaining, key=lambda lesson: lesson.lesson_number, default=None)

    async def record_lesson_completion(
        self,
        user_id: UUID,
        lesson_id: UUID,
        *,
        now: datetime.datetime,
        quiz_score: int | None = None,
    ) -> LessonProgress:
        async with self._lock:
            self._require_user(user_id)
            lesson = self._lessons.get(lesson_id)
            if lesson is None:
                raise LedgerError(f"lesson {lesson_id} not found")

            existing = next(
                (
                    p
                    for p in self._progress
                    if p.user_id == user_id and p.lesson_id == lesson_id
                ),
                None,
            )
            if existing is not None:
                return existing

            record = LessonProgress.new(
                user_id=user_id,
                lesson_id=lesson_id,
                completed_at=now,
                quiz_score=quiz_score,
            )
            self._progress.append(record)

            # Refresh the enrollment's stored percentage.
            track = self._tracks[lesson.track_id]
            done = sum(
                1
                for p in self._progress
                if p.user_id == user_id
                and self._lessons[p.lesson_id].track_id == track.id
            )
            pct = progress_percent(done, track.total_lessons)
            for ut in list(self._enrollments.values()):
                if ut.user_id == user_id and ut.track_id == track.id:
                    self._enrollments[ut.id] = replace(
                        ut,
                        progress=pct,
                        completed_at=now if pct >= 100 else ut.completed_at,
                    )
            return record

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_payment(self, payment: Payment) -> Payment:
        async with self._lock:
            self._require_user(payment.user_id)
            if payment.id in self._payments:
                raise LedgerError(f"payment {payment.id} already exists")
            self._payments[payment.id] = payment
            if payment.checkout_request_id:
                self._by_checkout[payment.checkout_request_id] = payment.id
            return payment

    async def attach_payment_correlation(
        self,
        payment_id: UUID,
        *,
        merchant_request_id: str | None,
        checkout_request_id: str,
        now: datetime.datetime,
    ) -> Payment:
        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise LedgerError(f"payment {payment_id} not found")
            if checkout_request_id in self._by_checkout:
                raise LedgerError(f"checkout id {checkout_request_id} already in use")
            updated = replace(
                payment,
                merchant_request_id=merchant_request_id,
                checkout_request_id=checkout_request_id,
                updated_at=now,
            )
            self._payments[payment_id] = updated
            self._by_checkout[checkout_request_id] = payment_id
            return updated

    async def get_payment(self, payment_id: UUID) -> Payment | None:
        return self._payments.get(payment_id)

    async def get_payment_by_checkout_id(
        self, checkout_request_id: str
    ) -> Payment | None:
        payment_id = self._by_checkout.get(checkout_request_id)
        return self._payments.get(payment_id) if payment_id is not None else None

    async def transition_payment(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        *,
        now: datetime.datetime,
        expected: PaymentStatus = PaymentStatus.PENDING,
        receipt_number: str | None = None,
        result_desc: str | None = None,
    ) -> bool:
        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise LedgerError(f"payment {payment_id} not found")
            if payment.status is not expected:
                return False
            self._payments[payment_id] = replace(
                payment,
                status=status,
                mpesa_receipt_number=receipt_number or payment.mpesa_receipt_number,
                result_desc=result_desc,
                updated_at=now,
            )
            return True

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def log_message(self, message: OutboundMessage) -> None:
        self.messages.append(message)
