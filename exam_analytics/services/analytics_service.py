"""Analytics service: one operation per analytics view.

Each operation builds its cache key, and on a miss fetches rows through the
query executor and hands them to the aggregation engine. Everything goes
through :class:`CacheManager` so concurrent misses collapse into one
computation.

``notify`` is the invalidation entry point for the exam-taking subsystem.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Sequence

from exam_analytics.config import settings
from exam_analytics.core.errors import ScopeNotFound
from exam_analytics.schemas.analytics import (
    DetailedAttemptsPage,
    ExamHistoryPage,
    ExamUsageList,
    TopTopics,
    UserTopics,
)
from exam_analytics.services import aggregation
from exam_analytics.services.aggregation import QualityLog
from exam_analytics.services.cache_manager import CachedResult, CacheManager
from exam_analytics.services.query_executor import (
    EntityKind,
    Order,
    QueryExecutor,
    QueryRequest,
)
from exam_analytics.services.recorder import Recorder
from exam_analytics.services.rows import FINALIZED, AnswerRow, AttemptRow, QuestionRow, TopicRow

logger = logging.getLogger(__name__)

COMPONENT = "aggregation"


class AnalyticsService:
    def __init__(
        self,
        executor: QueryExecutor,
        cache: CacheManager,
        recorder: Recorder,
        offload_rows: int | None = None,
    ):
        self.executor = executor
        self.cache = cache
        self.recorder = recorder
        self.offload_rows = offload_rows or settings.AGGREGATION_OFFLOAD_ROWS

    # ── helpers ──────────────────────────────────────────────────────────

    async def _crunch(self, fn: Callable, *args: Any, rows: int = 0, **kwargs: Any):
        """Run an aggregation function and forward its data-quality findings.

        Large inputs are crunched in a worker thread so the event loop keeps
        serving other keys.
        """
        log = QualityLog()
        with self.recorder.timed(COMPONENT, fn.__name__, rows=rows) as extra:
            if rows > self.offload_rows:
                extra["offloaded"] = True
                result = await asyncio.to_thread(fn, *args, log=log, **kwargs)
            else:
                result = fn(*args, log=log, **kwargs)
            extra["anomalies"] = len(log)
        for issue in log.issues:
            self.recorder.anomaly(COMPONENT, "data_quality", **issue)
        return result

    async def _catalog(
        self, answers: Sequence[AnswerRow]
    ) -> tuple[dict[uuid.UUID, QuestionRow], dict[uuid.UUID, TopicRow]]:
        """Questions referenced by ``answers`` and the topics they belong to."""
        question_ids = tuple({a.question_id for a in answers})
        questions = await self.executor.fetch_all(EntityKind.QUESTIONS, ids=question_ids)
        topic_ids = tuple({q.topic_id for q in questions if q.topic_id is not None})
        topics = await self.executor.fetch_all(EntityKind.TOPICS, ids=topic_ids)
        return {q.id: q for q in questions}, {t.id: t for t in topics}

    async def _require_user(self, user_id: uuid.UUID) -> None:
        if await self.executor.get_user(user_id) is None:
            raise ScopeNotFound("user", user_id)

    async def _finalized_answers(self, attempts: Sequence[AttemptRow]) -> list[AnswerRow]:
        ids = tuple(a.id for a in attempts if a.is_finalized)
        if not ids:
            return []
        return await self.executor.fetch_all(EntityKind.ANSWERS, attempt_ids=ids)

    # ── per-user ─────────────────────────────────────────────────────────

    async def user_performance(self, user_id: uuid.UUID) -> CachedResult:
        async def compute():
            user = await self.executor.get_user(user_id)
            if user is None:
                raise ScopeNotFound("user", user_id)
            attempts = await self.executor.fetch_all(EntityKind.ATTEMPTS, user_id=user_id)
            answers = await self._finalized_answers(attempts)
            questions, topics = await self._catalog(answers)
            return await self._crunch(
                aggregation.user_performance,
                user,
                attempts,
                answers,
                questions,
                topics,
                rows=len(attempts) + len(answers),
            )

        return await self.cache.get_or_compute(
            self.cache.key("user", user_id, "performance"), "user", compute
        )

    async def user_history(self, user_id: uuid.UUID, skip: int = 0, take: int | None = None) -> CachedResult:
        page = self.executor.page_request(skip, take)

        async def compute():
            await self._require_user(user_id)
            result = await self.executor.execute(
                QueryRequest(
                    kind=EntityKind.ATTEMPTS,
                    user_id=user_id,
                    statuses=FINALIZED,
                    page=page,
                    with_total=True,
                )
            )
            log = QualityLog()
            items = [aggregation.history_item(a, log) for a in result.items]
            for issue in log.issues:
                self.recorder.anomaly(COMPONENT, "data_quality", **issue)
            return ExamHistoryPage(
                user_id=user_id, items=items, total=result.total or 0, skip=page.skip, take=page.take
            )

        key = self.cache.key("user", user_id, "history", skip=page.skip, take=page.take)
        return await self.cache.get_or_compute(key, "user", compute)

    async def user_topics(self, user_id: uuid.UUID) -> CachedResult:
        async def compute():
            await self._require_user(user_id)
            attempts = await self.executor.fetch_all(
                EntityKind.ATTEMPTS, user_id=user_id, statuses=FINALIZED
            )
            answers = await self._finalized_answers(attempts)
            questions, topics = await self._catalog(answers)
            rollup = await self._crunch(
                aggregation.topic_rollup, attempts, answers, questions, topics, rows=len(answers)
            )
            return UserTopics(user_id=user_id, topics=rollup)

        return await self.cache.get_or_compute(
            self.cache.key("user", user_id, "topics"), "user", compute
        )

    async def user_trend(self, user_id: uuid.UUID) -> CachedResult:
        async def compute():
            await self._require_user(user_id)
            attempts = await self.executor.fetch_all(
                EntityKind.ATTEMPTS,
                user_id=user_id,
                statuses=FINALIZED,
                order=Order.OLDEST_FIRST,
            )
            return await self._crunch(
                aggregation.improvement_trend, user_id, attempts, rows=len(attempts)
            )

        return await self.cache.get_or_compute(
            self.cache.key("user", user_id, "trend"), "user", compute
        )

    async def user_attempts_detailed(
        self, user_id: uuid.UUID, skip: int = 0, take: int | None = None
    ) -> CachedResult:
        page = self.executor.page_request(skip, take)

        async def compute():
            await self._require_user(user_id)
            result = await self.executor.execute(
                QueryRequest(kind=EntityKind.ATTEMPTS, user_id=user_id, page=page, with_total=True)
            )
            items = await self._attempt_views(result.items)
            return DetailedAttemptsPage(
                scope="user",
                scope_id=user_id,
                items=items,
                total=result.total or 0,
                skip=page.skip,
                take=page.take,
            )

        key = self.cache.key("user", user_id, "attempts_detailed", skip=page.skip, take=page.take)
        return await self.cache.get_or_compute(key, "user", compute)

    async def _attempt_views(self, attempts: Sequence[AttemptRow]) -> list:
        answers = await self.executor.fetch_all(
            EntityKind.ANSWERS, attempt_ids=tuple(a.id for a in attempts)
        )
        finalized_ids = {a.id for a in attempts if a.is_finalized}
        questions, topics = await self._catalog(
            [ans for ans in answers if ans.attempt_id in finalized_ids]
        )
        by_attempt: dict[uuid.UUID, list[AnswerRow]] = {}
        for ans in answers:
            by_attempt.setdefault(ans.attempt_id, []).append(ans)

        log = QualityLog()
        views = [
            aggregation.attempt_view(a, by_attempt.get(a.id, []), questions, topics, log)
            for a in attempts
        ]
        for issue in log.issues:
            self.recorder.anomaly(COMPONENT, "data_quality", **issue)
        return views

    # ── per-exam ─────────────────────────────────────────────────────────

    async def exam_analytics(self, exam_id: uuid.UUID) -> CachedResult:
        async def compute():
            exam = await self.executor.get_exam(exam_id)
            if exam is None:
                raise ScopeNotFound("exam", exam_id)
            attempts = await self.executor.fetch_all(EntityKind.ATTEMPTS, exam_id=exam_id)
            answers = await self.executor.fetch_all(
                EntityKind.ANSWERS, exam_id=exam_id, statuses=FINALIZED
            )
            questions, _ = await self._catalog(answers)
            return await self._crunch(
                aggregation.exam_analytics,
                exam,
                attempts,
                answers,
                questions,
                rows=len(attempts) + len(answers),
            )

        return await self.cache.get_or_compute(
            self.cache.key("exam", exam_id, "analytics"), "exam", compute
        )

    async def exam_detailed(
        self,
        exam_id: uuid.UUID,
        attempt_id: uuid.UUID | None = None,
        skip: int = 0,
        take: int | None = None,
    ) -> CachedResult:
        page = self.executor.page_request(skip, take)

        async def compute():
            if await self.executor.get_exam(exam_id) is None:
                raise ScopeNotFound("exam", exam_id)
            if attempt_id is not None:
                attempt = await self.executor.get_attempt(attempt_id)
                if attempt is None or attempt.exam_id != exam_id:
                    raise ScopeNotFound("attempt", attempt_id)
                attempts, total = [attempt], 1
            else:
                result = await self.executor.execute(
                    QueryRequest(kind=EntityKind.ATTEMPTS, exam_id=exam_id, page=page, with_total=True)
                )
                attempts, total = result.items, result.total or 0
            return DetailedAttemptsPage(
                scope="exam",
                scope_id=exam_id,
                items=await self._attempt_views(attempts),
                total=total,
                skip=page.skip,
                take=page.take,
            )

        key = self.cache.key(
            "exam", exam_id, "detailed", attempt=attempt_id, skip=page.skip, take=page.take
        )
        return await self.cache.get_or_compute(key, "exam", compute)

    # ── system-wide ──────────────────────────────────────────────────────

    async def system_analytics(self) -> CachedResult:
        async def compute():
            users = await self.executor.fetch_all(EntityKind.USERS)
            exams = await self.executor.fetch_all(EntityKind.EXAMS)
            topics = await self.executor.fetch_all(EntityKind.TOPICS)
            questions = await self.executor.fetch_all(EntityKind.QUESTIONS)
            attempts = await self.executor.fetch_all(EntityKind.ATTEMPTS)
            answers = await self.executor.fetch_all(EntityKind.ANSWERS, statuses=FINALIZED)
            return await self._crunch(
                aggregation.system_analytics,
                users,
                exams,
                {t.id: t for t in topics},
                {q.id: q for q in questions},
                attempts,
                answers,
                self.cache.now(),
                rows=len(attempts) + len(answers),
            )

        return await self.cache.get_or_compute(
            self.cache.key("global", None, "system"), "global", compute
        )

    async def exam_usage(self) -> CachedResult:
        async def compute():
            exams = await self.executor.fetch_all(EntityKind.EXAMS)
            attempts = await self.executor.fetch_all(EntityKind.ATTEMPTS)
            usage = await self._crunch(aggregation.exam_usage, exams, attempts, rows=len(attempts))
            return ExamUsageList(exams=usage)

        return await self.cache.get_or_compute(
            self.cache.key("global", None, "exam_usage"), "global", compute
        )

    async def top_topics(self, limit: int | None = None) -> CachedResult:
        limit = min(limit or settings.TOP_TOPICS_LIMIT, self.executor.take_max)

        async def compute():
            topics = await self.executor.fetch_all(EntityKind.TOPICS)
            questions = await self.executor.fetch_all(EntityKind.QUESTIONS)
            attempts = await self.executor.fetch_all(EntityKind.ATTEMPTS, statuses=FINALIZED)
            answers = await self.executor.fetch_all(EntityKind.ANSWERS, statuses=FINALIZED)
            ranked = await self._crunch(
                aggregation.rank_topics,
                answers,
                {q.id: q for q in questions},
                {t.id: t for t in topics},
                limit=limit,
                attempts=attempts,
                rows=len(attempts) + len(answers),
            )
            return TopTopics(topics=ranked)

        return await self.cache.get_or_compute(
            self.cache.key("global", None, "top_topics", limit=limit), "global", compute
        )

    # ── invalidation entry point ─────────────────────────────────────────

    async def notify(self, user_id: uuid.UUID, exam_id: uuid.UUID) -> int:
        """Attempt finalized: drop the user's, the exam's and all system-wide views."""
        deleted = 0
        for prefix in (
            self.cache.scope_prefix("user", user_id),
            self.cache.scope_prefix("exam", exam_id),
            self.cache.scope_prefix("global"),
        ):
            deleted += await self.cache.invalidate_prefix(prefix)
        logger.info(
            "Attempt finalized for user %s on exam %s, %d cached views invalidated",
            user_id,
            exam_id,
            deleted,
        )
        return deleted
