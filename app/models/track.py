from __future__ import annotations

import datetime
from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass(frozen=True, slots=True)
class Track:
    """A named curriculum of ordered lessons.  Reference data."""

    id: UUID
    slug: str
    name: str
    icon: str
    total_lessons: int
    estimated_duration_weeks: int
    description: str = ""

    @staticmethod
    def new(
        *,
        slug: str,
        name: str,
        icon: str,
        total_lessons: int,
        estimated_duration_weeks: int,
        description: str = "",
    ) -> Track:
        return Track(
            id=uuid4(),
            slug=slug,
            name=name,
            icon=icon,
            total_lessons=total_lessons,
            estimated_duration_weeks=estimated_duration_weeks,
            description=description,
        )


@dataclass(frozen=True, slots=True)
class UserTrack:
    """Enrollment of a user in a track.  Soft-deactivated, never deleted."""

    id: UUID
    user_id: UUID
    track_id: UUID
    started_at: datetime.datetime
    progress: int = 0  # percent, 0..100
    is_active: bool = True
    completed_at: datetime.datetime | None = None

    @staticmethod
    def new(*, user_id: UUID, track_id: UUID, now: datetime.datetime) -> UserTrack:
        return UserTrack(id=uuid4(), user_id=user_id, track_id=track_id, started_at=now)


@dataclass(frozen=True, slots=True)
class Lesson:
    id: UUID
    track_id: UUID
    lesson_number: int
    title: str
    content: str
    estimated_reading_time_minutes: int = 5
    quiz_question: str | None = None

    @staticmethod
    def new(
        *,
        track_id: UUID,
        lesson_number: int,
        title: str,
        content: str,
        estimated_reading_time_minutes: int = 5,
        quiz_question: str | None = None,
    ) -> Lesson:
        return Lesson(
            id=uuid4(),
            track_id=track_id,
            lesson_number=lesson_number,
            title=title,
            content=content,
            estimated_reading_time_minutes=estimated_reading_time_minutes,
            quiz_question=quiz_question,
        )


@dataclass(frozen=True, slots=True)
class LessonProgress:
    """Append-only completion record.  A lesson is completed iff one exists."""

    id: UUID
    user_id: UUID
    lesson_id: UUID
    completed_at: datetime.datetime
    quiz_score: int | None = None

    @staticmethod
    def new(
        *,
        user_id: UUID,
        lesson_id: UUID,
        completed_at: datetime.datetime,
        quiz_score: int | None = None,
    ) -> LessonProgress:
        return LessonProgress(
            id=uuid4(),
            user_id=user_id,
            lesson_id=lesson_id,
            completed_at=completed_at,
            quiz_score=quiz_score,
        )


def progress_percent(completed: int, total_lessons: int) -> int:
    """Completion percentage, rounded and clamped to [0, 100]."""
    if total_lessons <= 0:
        return 0
    return max(0, min(100, round(completed * 100 / total_lessons)))
