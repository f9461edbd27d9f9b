"""PostgreSQL implementation of the Ledger Protocol.

Each operation runs in its own transaction from the session factory.
Compare-and-set transitions are a single ``UPDATE ... WHERE status = ...``
and report success through the affected row count, so two concurrent
callbacks for the same checkout cannot both win.
"""

from __future__ import annotations

import datetime
from collections.abc import Collection, Iterable
from uuid import UUID

from sqlalchemy import Select, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import LedgerError
from app.db.tables import (
    LessonProgressRow,
    LessonRow,
    OutboundMessageRow,
    PaymentRow,
    TrackRow,
    UserRow,
    UserTrackRow,
)
from app.models.message import OutboundMessage
from app.models.payment import Payment, PaymentStatus
from app.models.track import Lesson, LessonProgress, Track, UserTrack, progress_percent
from app.models.user import (
    SubscriptionPlan,
    SubscriptionStatus,
    User,
    preferred_times_at_hour,
)


class PgLedger:
    """Satisfies the Ledger Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _run(self, op):
        """Run ``op(session)`` in one transaction, mapping driver errors."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await op(session)
        except LedgerError:
            raise
        except SQLAlchemyError as e:
            raise LedgerError(f"database error: {e.__class__.__name__}") from e

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def load_catalog(self, tracks: Iterable[Track], lessons: Iterable[Lesson]) -> None:
        tracks = list(tracks)
        lessons = list(lessons)

        async def op(session: AsyncSession) -> None:
            for t in tracks:
                stmt = insert(TrackRow).values(
                    id=t.id,
                    slug=t.slug,
                    name=t.name,
                    description=t.description,
                    icon=t.icon,
                    total_lessons=t.total_lessons,
                    estimated_duration_weeks=t.estimated_duration_weeks,
                )
                await session.execute(stmt.on_conflict_do_nothing(index_elements=["id"]))
            for lesson in lessons:
                stmt = insert(LessonRow).values(
                    id=lesson.id,
                    track_id=lesson.track_id,
                    lesson_number=lesson.lesson_number,
                    title=lesson.title,
                    content=lesson.content,
                    estimated_reading_time=lesson.estimated_reading_time_minutes,
                    quiz_question=lesson.quiz_question,
                )
                await session.execute(stmt.on_conflict_do_nothing(index_elements=["id"]))

        await self._run(op)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: UUID) -> User | None:
        async def op(session: AsyncSession) -> User | None:
            row = await session.get(UserRow, user_id)
            return _row_to_user(row) if row is not None else None

        return await self._run(op)

    async def get_user_by_address(self, whatsapp_number: str) -> User | None:
        async def op(session: AsyncSession) -> User | None:
            stmt = select(UserRow).where(UserRow.whatsapp_number == whatsapp_number)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_user(row) if row is not None else None

        return await self._run(op)

    async def upsert_user(self, user: User) -> User:
        async def op(session: AsyncSession) -> User:
            stmt = insert(UserRow).values(
                id=user.id,
                whatsapp_number=user.whatsapp_number,
                name=user.name,
                email=user.email,
                preferred_time=user.preferred_time,
                subscription_plan=user.subscription_plan.value,
                subscription_status=user.subscription_status.value,
                subscription_expires_at=user.subscription_expires_at,
                created_at=user.created_at,
                updated_at=user.updated_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["whatsapp_number"],
                set_={
                    "name": stmt.excluded.name,
                    "email": func.coalesce(stmt.excluded.email, UserRow.email),
                    "preferred_time": stmt.excluded.preferred_time,
                    "updated_at": stmt.excluded.updated_at,
                },
            ).returning(UserRow)
            row = (await session.execute(stmt)).scalar_one()
            return _row_to_user(row)

        return await self._run(op)

    async def update_subscription(
        self,
        user_id: UUID,
        *,
        plan: SubscriptionPlan,
        status: SubscriptionStatus,
        expires_at: datetime.datetime | None,
        now: datetime.datetime,
    ) -> User:
        async def op(session: AsyncSession) -> User:
            stmt = (
                update(UserRow)
                .where(UserRow.id == user_id)
                .values(
                    subscription_plan=plan.value,
                    subscription_status=status.value,
                    subscription_expires_at=expires_at,
                    updated_at=now,
                )
                .returning(UserRow)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                raise LedgerError(f"user {user_id} not found")
            return _row_to_user(row)

        return await self._run(op)

    async def set_subscription_status(
        self,
        user_id: UUID,
        status: SubscriptionStatus,
        *,
        expected: Collection[SubscriptionStatus],
        now: datetime.datetime,
    ) -> bool:
        async def op(session: AsyncSession) -> bool:
            stmt = (
                update(UserRow)
                .where(
                    UserRow.id == user_id,
                    UserRow.subscription_status.in_([s.value for s in expected]),
                )
                .values(subscription_status=status.value, updated_at=now)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        return await self._run(op)

    async def expire_lapsed_subscriptions(self, now: datetime.datetime) -> int:
        async def op(session: AsyncSession) -> int:
            stmt = (
                update(UserRow)
                .where(
                    UserRow.subscription_status == SubscriptionStatus.ACTIVE.value,
                    UserRow.subscription_expires_at.is_not(None),
                    UserRow.subscription_expires_at < now,
                )
                .values(
                    subscription_status=SubscriptionStatus.EXPIRED.value,
                    updated_at=now,
                )
            )
            result = await session.execute(stmt)
            return result.rowcount

        return await self._run(op)

    async def list_active_users_at_hour(
        self, hour: int, now: datetime.datetime
    ) -> list[User]:
        stmt = active_at_hour_stmt(hour, now)
        if stmt is None:
            return []

        async def op(session: AsyncSession) -> list[User]:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_user(r) for r in rows]

        return await self._run(op)

    # ------------------------------------------------------------------
    # Catalog and enrollment
    # ------------------------------------------------------------------

    async def list_tracks(self) -> list[Track]:
        async def op(session: AsyncSession) -> list[Track]:
            rows = (await session.execute(select(TrackRow).order_by(TrackRow.name))).scalars()
            return [_row_to_track(r) for r in rows]

        return await self._run(op)

    async def get_track(self, track_id: UUID) -> Track | None:
        async def op(session: AsyncSession) -> Track | None:
            row = await session.get(TrackRow, track_id)
            return _row_to_track(row) if row is not None else None

        return await self._run(op)

    async def get_track_by_slug(self, slug: str) -> Track | None:
        async def op(session: AsyncSession) -> Track | None:
            stmt = select(TrackRow).where(TrackRow.slug == slug)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_track(row) if row is not None else None

        return await self._run(op)

    async def enroll(
        self, user_id: UUID, track_id: UUID, now: datetime.datetime
    ) -> UserTrack:
        async def op(session: AsyncSession) -> UserTrack:
            fresh = UserTrack.new(user_id=user_id, track_id=track_id, now=now)
            stmt = insert(UserTrackRow).values(
                id=fresh.id,
                user_id=user_id,
                track_id=track_id,
                progress=0,
                is_active=True,
                started_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "track_id"],
                set_={"is_active": True},
            ).returning(UserTrackRow)
            try:
                row = (await session.execute(stmt)).scalar_one()
            except IntegrityError as e:
                raise LedgerError(f"cannot enroll user {user_id} in track {track_id}") from e
            return _row_to_user_track(row)

        return await self._run(op)

    async def list_active_enrollments(self, user_id: UUID) -> list[UserTrack]:
        async def op(session: AsyncSession) -> list[UserTrack]:
            stmt = (
                select(UserTrackRow)
                .where(UserTrackRow.user_id == user_id, UserTrackRow.is_active.is_(True))
                .order_by(UserTrackRow.started_at)
            )
            return [_row_to_user_track(r) for r in (await session.execute(stmt)).scalars()]

        return await self._run(op)

    # ------------------------------------------------------------------
    # Lessons and progress
    # ------------------------------------------------------------------

    async def completed_lesson_ids(
        self, user_id: UUID, track_id: UUID | None = None
    ) -> set[UUID]:
        async def op(session: AsyncSession) -> set[UUID]:
            stmt = select(LessonProgressRow.lesson_id).where(
                LessonProgressRow.user_id == user_id
            )
            if track_id is not None:
                stmt = stmt.join(LessonRow, LessonRow.id == LessonProgressRow.lesson_id).where(
                    LessonRow.track_id == track_id
                )
            return set((await session.execute(stmt)).scalars())

        return await self._run(op)

    async def next_lesson(
        self, track_id: UUID, excluding: Collection[UUID]
    ) -> Lesson | None:
        async def op(session: AsyncSession) -> Lesson | None:
            stmt = select(LessonRow).where(LessonRow.track_id == track_id)
            if excluding:
                stmt = stmt.where(LessonRow.id.not_in(list(excluding)))
            stmt = stmt.order_by(LessonRow.lesson_number).limit(1)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_lesson(row) if row is not None else None

        return await self._run(op)

    async def record_lesson_completion(
        self,
        user_id: UUID,
        lesson_id: UUID,
        *,
        now: datetime.datetime,
        quiz_score: int | None = None,
    ) -> LessonProgress:
        async def op(session: AsyncSession) -> LessonProgress:
            lesson = await session.get(LessonRow, lesson_id)
            if lesson is None:
                raise LedgerError(f"lesson {lesson_id} not found")

            record = LessonProgress.new(
                user_id=user_id, lesson_id=lesson_id, completed_at=now, quiz_score=quiz_score
            )
            stmt = (
                insert(LessonProgressRow)
                .values(
                    id=record.id,
                    user_id=user_id,
                    lesson_id=lesson_id,
                    completed_at=now,
                    quiz_score=quiz_score,
                )
                .on_conflict_do_nothing(index_elements=["user_id", "lesson_id"])
            )
            await session.execute(stmt)

            existing = (
                await session.execute(
                    select(LessonProgressRow).where(
                        LessonProgressRow.user_id == user_id,
                        LessonProgressRow.lesson_id == lesson_id,
                    )
                )
            ).scalar_one()

            track = await session.get(TrackRow, lesson.track_id)
            done = (
                await session.execute(
                    select(func.count())
                    .select_from(LessonProgressRow)
                    .join(LessonRow, LessonRow.id == LessonProgressRow.lesson_id)
                    .where(
                        LessonProgressRow.user_id == user_id,
                        LessonRow.track_id == lesson.track_id,
                    )
                )
            ).scalar_one()
            pct = progress_percent(done, track.total_lessons)
            values: dict = {"progress": pct}
            if pct >= 100:
                values["completed_at"] = now
            await session.execute(
                update(UserTrackRow)
                .where(
                    UserTrackRow.user_id == user_id,
                    UserTrackRow.track_id == lesson.track_id,
                )
                .values(**values)
            )
            return _row_to_progress(existing)

        return await self._run(op)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_payment(self, payment: Payment) -> Payment:
        async def op(session: AsyncSession) -> Payment:
            session.add(
                PaymentRow(
                    id=payment.id,
                    user_id=payment.user_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    payment_method=payment.payment_method,
                    plan=payment.plan.value,
                    phone_number=payment.phone_number,
                    status=payment.status.value,
                    merchant_request_id=payment.merchant_request_id,
                    checkout_request_id=payment.checkout_request_id,
                    mpesa_receipt_number=payment.mpesa_receipt_number,
                    result_desc=payment.result_desc,
                    created_at=payment.created_at,
                    updated_at=payment.updated_at,
                )
            )
            try:
                await session.flush()
            except IntegrityError as e:
                raise LedgerError(f"cannot create payment {payment.id}") from e
            return payment

        return await self._run(op)

    async def attach_payment_correlation(
        self,
        payment_id: UUID,
        *,
        merchant_request_id: str | None,
        checkout_request_id: str,
        now: datetime.datetime,
    ) -> Payment:
        async def op(session: AsyncSession) -> Payment:
            stmt = (
                update(PaymentRow)
                .where(PaymentRow.id == payment_id)
                .values(
                    merchant_request_id=merchant_request_id,
                    checkout_request_id=checkout_request_id,
                    updated_at=now,
                )
                .returning(PaymentRow)
            )
            try:
                row = (await session.execute(stmt)).scalar_one_or_none()
            except IntegrityError as e:
                raise LedgerError(f"checkout id {checkout_request_id} already in use") from e
            if row is None:
                raise LedgerError(f"payment {payment_id} not found")
            return _row_to_payment(row)

        return await self._run(op)

    async def get_payment(self, payment_id: UUID) -> Payment | None:
        async def op(session: AsyncSession) -> Payment | None:
            row = await session.get(PaymentRow, payment_id)
            return _row_to_payment(row) if row is not None else None

        return await self._run(op)

    async def get_payment_by_checkout_id(
        self, checkout_request_id: str
    ) -> Payment | None:
        async def op(session: AsyncSession) -> Payment | None:
            stmt = select(PaymentRow).where(
                PaymentRow.checkout_request_id == checkout_request_id
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_payment(row) if row is not None else None

        return await self._run(op)

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
        async def op(session: AsyncSession) -> bool:
            values: dict = {
                "status": status.value,
                "result_desc": result_desc,
                "updated_at": now,
            }
            if receipt_number:
                values["mpesa_receipt_number"] = receipt_number
            stmt = (
                update(PaymentRow)
                .where(PaymentRow.id == payment_id, PaymentRow.status == expected.value)
                .values(**values)
            )
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return True
            if await session.get(PaymentRow, payment_id) is None:
                raise LedgerError(f"payment {payment_id} not found")
            return False

        return await self._run(op)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def log_message(self, message: OutboundMessage) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(
                OutboundMessageRow(
                    id=message.id,
                    user_id=message.user_id,
                    message_type=message.message_type.value,
                    content=message.content,
                    sent_at=message.sent_at,
                    delivery_status=message.delivery_status.value,
                    provider_message_id=message.provider_message_id,
                )
            )

        await self._run(op)


def active_at_hour_stmt(hour: int, now: datetime.datetime) -> Select | None:
    """Active, still-current users whose preferred time falls in ``hour``.

    preferred_time holds display strings such as "6:00 PM", so the hour is
    matched against the offered times.  None when no offered time is in
    ``hour``.
    """
    times = preferred_times_at_hour(hour)
    if not times:
        return None
    return select(UserRow).where(
        UserRow.subscription_status == SubscriptionStatus.ACTIVE.value,
        (UserRow.subscription_expires_at.is_(None))
        | (UserRow.subscription_expires_at >= now),
        UserRow.preferred_time.in_(times),
    )


def _row_to_user(row: UserRow) -> User:
    return User(
        id=row.id,
        whatsapp_number=row.whatsapp_number,
        name=row.name,
        email=row.email,
        preferred_time=row.preferred_time,
        subscription_plan=SubscriptionPlan(row.subscription_plan),
        subscription_status=SubscriptionStatus(row.subscription_status),
        subscription_expires_at=row.subscription_expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_track(row: TrackRow) -> Track:
    return Track(
        id=row.id,
        slug=row.slug,
        name=row.name,
        icon=row.icon,
        total_lessons=row.total_lessons,
        estimated_duration_weeks=row.estimated_duration_weeks,
        description=row.description or "",
    )


def _row_to_user_track(row: UserTrackRow) -> UserTrack:
    return UserTrack(
        id=row.id,
        user_id=row.user_id,
        track_id=row.track_id,
        started_at=row.started_at,
        progress=row.progress,
        is_active=row.is_active,
        completed_at=row.completed_at,
    )


def _row_to_lesson(row: LessonRow) -> Lesson:
    return Lesson(
        id=row.id,
        track_id=row.track_id,
        lesson_number=row.lesson_number,
        title=row.title,
        content=row.content,
        estimated_reading_time_minutes=row.estimated_reading_time,
        quiz_question=row.quiz_question,
    )


def _row_to_progress(row: LessonProgressRow) -> LessonProgress:
    return LessonProgress(
        id=row.id,
        user_id=row.user_id,
        lesson_id=row.lesson_id,
        completed_at=row.completed_at,
        quiz_score=row.quiz_score,
    )


def _row_to_payment(row: PaymentRow) -> Payment:
    return Payment(
        id=row.id,
        user_id=row.user_id,
        amount=int(row.amount),
        currency=row.currency,
        payment_method=row.payment_method,
        plan=SubscriptionPlan(row.plan),
        phone_number=row.phone_number,
        status=PaymentStatus(row.status),
        merchant_request_id=row.merchant_request_id,
        checkout_request_id=row.checkout_request_id,
        mpesa_receipt_number=row.mpesa_receipt_number,
        result_desc=row.result_desc,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
