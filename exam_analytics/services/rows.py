"""Plain row types handed from the query executor to the aggregation layer.

Rows are immutable and detached from any SQLAlchemy session, so they can be
crunched in worker threads and outlive the session that produced them.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

FINALIZED = ("SUBMITTED", "EXPIRED")


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class UserRow:
    id: uuid.UUID
    name: str
    email: str
    role: str
    is_enrolled: bool
    created_at: datetime | None = None


@dataclass(frozen=True)
class TopicRow:
    id: uuid.UUID
    name: str


@dataclass(frozen=True)
class QuestionRow:
    id: uuid.UUID
    topic_id: uuid.UUID | None
    question_text: str
    correct_answer_index: int


@dataclass(frozen=True)
class ExamRow:
    id: uuid.UUID
    title: str
    time_limit_seconds: int | None = None


@dataclass(frozen=True)
class AttemptRow:
    id: uuid.UUID
    exam_id: uuid.UUID
    user_id: uuid.UUID
    status: str
    score: int | None
    total_questions: int
    time_taken_seconds: int | None
    started_at: datetime
    submitted_at: datetime | None
    exam_title: str | None = None

    @property
    def is_finalized(self) -> bool:
        return self.status in FINALIZED


@dataclass(frozen=True)
class AnswerRow:
    id: uuid.UUID
    attempt_id: uuid.UUID
    question_id: uuid.UUID
    selected_option_index: int | None
    is_correct: bool | None
    answered_at: datetime | None = None
