"""Query executor: translates logical analytics requests into store queries.

Contract
--------
``execute(QueryRequest) -> Page``: an ordered page of source rows plus an
optional total-count hint.

- ``take`` is capped at ``QUERY_TAKE_MAX`` whatever the caller asked for;
  negative ``skip`` (or ``take < 1``) is rejected.
- Attempt listings are ordered by completion time (submission, falling back
  to start for unfinished attempts), newest first unless ``Order.OLDEST_FIRST``
  is requested; ties are broken by id so pages are stable.
- Each query runs in a worker thread on its own session, bounded by
  ``QUERY_TIMEOUT_SECONDS``. Timeouts and store errors raise
  :class:`UpstreamFailure`; an empty result is not an error.
- Every query is timed and reported to the recorder; slow queries are
  reported a second time as ``slow_query``.
"""

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from exam_analytics.config import settings
from exam_analytics.core.errors import UpstreamFailure, ValidationFailed
from exam_analytics.db.models import Attempt, Exam, ExamAnswer, Question, Topic, User
from exam_analytics.services.recorder import Recorder
from exam_analytics.services.rows import (
    AnswerRow,
    AttemptRow,
    ExamRow,
    QuestionRow,
    TopicRow,
    UserRow,
    as_utc,
)

logger = logging.getLogger(__name__)

COMPONENT = "query_executor"

# Keeps IN (...) lists well below SQLite's bound-parameter limit.
_ID_CHUNK = 500


class EntityKind(str, enum.Enum):
    USERS = "users"
    TOPICS = "topics"
    QUESTIONS = "questions"
    EXAMS = "exams"
    ATTEMPTS = "attempts"
    ANSWERS = "answers"


class Order(str, enum.Enum):
    NEWEST_FIRST = "newest_first"
    OLDEST_FIRST = "oldest_first"


@dataclass(frozen=True)
class PageRequest:
    skip: int = 0
    take: int = 10


@dataclass(frozen=True)
class QueryRequest:
    """A logical request against the store.

    ``statuses`` filters attempts by status; for ``ANSWERS`` it filters on the
    status of the owning attempt. ``attempt_ids`` scopes answers.
    """

    kind: EntityKind
    ids: tuple[uuid.UUID, ...] | None = None
    user_id: uuid.UUID | None = None
    exam_id: uuid.UUID | None = None
    attempt_ids: tuple[uuid.UUID, ...] | None = None
    statuses: tuple[str, ...] | None = None
    page: PageRequest | None = None
    with_total: bool = False
    order: Order = Order.NEWEST_FIRST


@dataclass
class Page:
    items: list[Any]
    total: int | None = None
    skip: int = 0
    take: int | None = None

    def __len__(self) -> int:
        return len(self.items)


# ── row converters ────────────────────────────────────────────────────────────


def _user_row(row) -> UserRow:
    u = row[0]
    return UserRow(
        id=u.id,
        name=u.name,
        email=u.email,
        role=u.role.value if hasattr(u.role, "value") else str(u.role),
        is_enrolled=bool(u.is_enrolled),
        created_at=as_utc(u.created_at),
    )


def _topic_row(row) -> TopicRow:
    t = row[0]
    return TopicRow(id=t.id, name=t.name)


def _question_row(row) -> QuestionRow:
    q = row[0]
    return QuestionRow(
        id=q.id,
        topic_id=q.topic_id,
        question_text=q.question_text,
        correct_answer_index=q.correct_answer_index,
    )


def _exam_row(row) -> ExamRow:
    e = row[0]
    return ExamRow(id=e.id, title=e.title, time_limit_seconds=e.time_limit_seconds)


def _attempt_row(row) -> AttemptRow:
    a, exam_title = row[0], row[1]
    return AttemptRow(
        id=a.id,
        exam_id=a.exam_id,
        user_id=a.user_id,
        status=a.status.value if hasattr(a.status, "value") else str(a.status),
        score=a.score,
        total_questions=a.total_questions or 0,
        time_taken_seconds=a.time_taken_seconds,
        started_at=as_utc(a.started_at),
        submitted_at=as_utc(a.submitted_at),
        exam_title=exam_title,
    )


def _answer_row(row) -> AnswerRow:
    ans = row[0]
    return AnswerRow(
        id=ans.id,
        attempt_id=ans.attempt_id,
        question_id=ans.question_id,
        selected_option_index=ans.selected_option_index,
        is_correct=ans.is_correct,
        answered_at=as_utc(ans.answered_at),
    )


def _chunks(values: Sequence[uuid.UUID], size: int) -> Iterable[Sequence[uuid.UUID]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


# ── executor ──────────────────────────────────────────────────────────────────


class QueryExecutor:
    """Read-only gateway to the persistent store."""

    def __init__(
        self,
        session_factory: sessionmaker,  # type: ignore[type-arg]
        recorder: Recorder,
        take_max: int | None = None,
        timeout_seconds: float | None = None,
        slow_query_ms: float | None = None,
    ):
        self._session_factory = session_factory
        self._recorder = recorder
        self.take_max = take_max or settings.QUERY_TAKE_MAX
        self.timeout_seconds = timeout_seconds or settings.QUERY_TIMEOUT_SECONDS
        self.slow_query_ms = slow_query_ms if slow_query_ms is not None else settings.SLOW_QUERY_MS

    # ── pagination ───────────────────────────────────────────────────────

    def page_request(self, skip: int = 0, take: int | None = None) -> PageRequest:
        """Validate a caller-supplied window and cap ``take``."""
        if take is None:
            take = settings.QUERY_TAKE_DEFAULT
        if skip < 0:
            raise ValidationFailed("skip must be non-negative", {"skip": skip})
        if take < 1:
            raise ValidationFailed("take must be at least 1", {"take": take})
        return PageRequest(skip=skip, take=min(take, self.take_max))

    # ── public API ───────────────────────────────────────────────────────

    async def execute(self, request: QueryRequest) -> Page:
        if request.page is not None:
            page = self.page_request(request.page.skip, request.page.take)
            if page != request.page:
                self._recorder.record(
                    COMPONENT, "take_capped", requested=request.page.take, take=page.take
                )
            request = replace(request, page=page)

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._run, request), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            elapsed = (time.perf_counter() - start) * 1000
            self._recorder.record(COMPONENT, "query_timeout", elapsed, kind=request.kind.value)
            logger.error("Query on %s timed out after %.0fms", request.kind.value, elapsed)
            raise UpstreamFailure(
                f"Query on {request.kind.value} timed out",
                {"timeout_seconds": self.timeout_seconds},
                timeout=True,
            )
        except SQLAlchemyError as e:
            elapsed = (time.perf_counter() - start) * 1000
            self._recorder.record(
                COMPONENT, "query_failed", elapsed, kind=request.kind.value, error=str(e)
            )
            logger.error("Query on %s failed: %s", request.kind.value, e)
            raise UpstreamFailure("Persistent store unavailable") from e

        elapsed = (time.perf_counter() - start) * 1000
        self._recorder.record(
            COMPONENT, "query", elapsed, kind=request.kind.value, rows=len(result.items)
        )
        if elapsed > self.slow_query_ms:
            self._recorder.record(
                COMPONENT, "slow_query", elapsed, kind=request.kind.value, rows=len(result.items)
            )
            logger.warning("Slow query on %s: %.0fms", request.kind.value, elapsed)
        return result

    async def fetch_all(self, kind: EntityKind, **filters: Any) -> list[Any]:
        """Unpaginated scan for aggregation inputs."""
        page = await self.execute(QueryRequest(kind=kind, **filters))
        return page.items

    async def get_user(self, user_id: uuid.UUID) -> UserRow | None:
        return await self._get_one(EntityKind.USERS, user_id)

    async def get_exam(self, exam_id: uuid.UUID) -> ExamRow | None:
        return await self._get_one(EntityKind.EXAMS, exam_id)

    async def get_attempt(self, attempt_id: uuid.UUID) -> AttemptRow | None:
        return await self._get_one(EntityKind.ATTEMPTS, attempt_id)

    async def _get_one(self, kind: EntityKind, entity_id: uuid.UUID):
        page = await self.execute(QueryRequest(kind=kind, ids=(entity_id,)))
        return page.items[0] if page.items else None

    # ── worker-thread side ───────────────────────────────────────────────

    def _run(self, request: QueryRequest) -> Page:
        builder, convert = _BUILDERS[request.kind]
        id_filter = request.ids if request.kind != EntityKind.ANSWERS else request.attempt_ids
        with self._session_factory() as db:
            total = None
            if request.with_total:
                base = builder(request, id_filter)
                total = db.scalar(
                    select(func.count()).select_from(base.order_by(None).subquery())
                )

            if request.page is None and id_filter is not None and len(id_filter) > _ID_CHUNK:
                rows = []
                for chunk in _chunks(id_filter, _ID_CHUNK):
                    rows.extend(self._fetch(db, builder(request, tuple(chunk)), convert))
            else:
                stmt = builder(request, id_filter)
                if request.page is not None:
                    stmt = stmt.offset(request.page.skip).limit(request.page.take)
                rows = self._fetch(db, stmt, convert)

        return Page(
            items=rows,
            total=total,
            skip=request.page.skip if request.page else 0,
            take=request.page.take if request.page else None,
        )

    @staticmethod
    def _fetch(db: Session, stmt, convert: Callable) -> list[Any]:
        return [convert(row) for row in db.execute(stmt).all()]

    # ── statement builders ───────────────────────────────────────────────

    @staticmethod
    def _users(request: QueryRequest, ids):
        stmt = select(User)
        if ids is not None:
            stmt = stmt.where(User.id.in_(ids))
        return stmt.order_by(User.created_at, User.id)

    @staticmethod
    def _topics(request: QueryRequest, ids):
        stmt = select(Topic)
        if ids is not None:
            stmt = stmt.where(Topic.id.in_(ids))
        return stmt.order_by(Topic.name, Topic.id)

    @staticmethod
    def _questions(request: QueryRequest, ids):
        stmt = select(Question)
        if ids is not None:
            stmt = stmt.where(Question.id.in_(ids))
        return stmt.order_by(Question.id)

    @staticmethod
    def _exams(request: QueryRequest, ids):
        stmt = select(Exam)
        if ids is not None:
            stmt = stmt.where(Exam.id.in_(ids))
        return stmt.order_by(Exam.created_at, Exam.id)

    @staticmethod
    def _attempts(request: QueryRequest, ids):
        stmt = select(Attempt, Exam.title).outerjoin(Exam, Attempt.exam_id == Exam.id)
        if ids is not None:
            stmt = stmt.where(Attempt.id.in_(ids))
        if request.user_id is not None:
            stmt = stmt.where(Attempt.user_id == request.user_id)
        if request.exam_id is not None:
            stmt = stmt.where(Attempt.exam_id == request.exam_id)
        if request.statuses:
            stmt = stmt.where(Attempt.status.in_(request.statuses))
        completed_at = func.coalesce(Attempt.submitted_at, Attempt.started_at)
        if request.order == Order.OLDEST_FIRST:
            return stmt.order_by(completed_at.asc(), Attempt.id.asc())
        return stmt.order_by(completed_at.desc(), Attempt.id.desc())

    @staticmethod
    def _answers(request: QueryRequest, attempt_ids):
        stmt = select(ExamAnswer)
        if attempt_ids is not None:
            stmt = stmt.where(ExamAnswer.attempt_id.in_(attempt_ids))
        if request.statuses or request.user_id is not None or request.exam_id is not None:
            stmt = stmt.join(Attempt, ExamAnswer.attempt_id == Attempt.id)
            if request.statuses:
                stmt = stmt.where(Attempt.status.in_(request.statuses))
            if request.user_id is not None:
                stmt = stmt.where(Attempt.user_id == request.user_id)
            if request.exam_id is not None:
                stmt = stmt.where(Attempt.exam_id == request.exam_id)
        return stmt.order_by(ExamAnswer.attempt_id, ExamAnswer.answered_at, ExamAnswer.id)


_BUILDERS: dict[EntityKind, tuple[Callable, Callable]] = {
    EntityKind.USERS: (QueryExecutor._users, _user_row),
    EntityKind.TOPICS: (QueryExecutor._topics, _topic_row),
    EntityKind.QUESTIONS: (QueryExecutor._questions, _question_row),
    EntityKind.EXAMS: (QueryExecutor._exams, _exam_row),
    EntityKind.ATTEMPTS: (QueryExecutor._attempts, _attempt_row),
    EntityKind.ANSWERS: (QueryExecutor._answers, _answer_row),
}
