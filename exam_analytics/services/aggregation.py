"""Aggregation engine: pure computation over rows fetched by the query executor.

No caching, no I/O. Every function takes plain rows and returns schema
objects. Malformed individual rows never abort a computation: they are
skipped and written to a :class:`QualityLog`, which the caller forwards to
the recorder.

Rules
-----
- Only finalized attempts (``SUBMITTED`` / ``EXPIRED``) feed averages and
  trends; ``IN_PROGRESS`` attempts only count towards totals and
  completion rates.
- A finalized attempt whose score cannot be read (``SUBMITTED`` without a
  score, non-positive ``total_questions``, score out of range) is flagged and
  feeds nothing: no scores, durations, topic or question accuracy.
- An attempt contributes ``score / total_questions * 100``.
- Divisions by zero return ``None`` (the "no data" sentinel).
- Trend: earlier half = first ``n // 2`` points, later half = the rest.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from exam_analytics.config import settings
from exam_analytics.schemas.analytics import (
    AnswerDetail,
    AttemptView,
    ExamAnalytics,
    ExamHistoryItem,
    ExamUsage,
    FinalizedView,
    ImprovementTrend,
    InProgressView,
    QuestionAnalytics,
    RecentAttempt,
    ScorePoint,
    SystemAnalytics,
    TopicPerformance,
    TopTopic,
    TrendLabel,
    TrendPeriod,
    UserEngagement,
    UserPerformanceSnapshot,
)
from exam_analytics.services.rows import (
    AnswerRow,
    AttemptRow,
    ExamRow,
    QuestionRow,
    TopicRow,
    UserRow,
)


# ── data-quality log ──────────────────────────────────────────────────────────


class QualityLog:
    """Collects data-quality anomalies found while aggregating (deduplicated)."""

    def __init__(self) -> None:
        self.issues: list[dict[str, Any]] = []
        self._seen: set[tuple[str, str]] = set()

    def flag(self, kind: str, row_id: Any, **detail: Any) -> None:
        key = (kind, str(row_id))
        if key in self._seen:
            return
        self._seen.add(key)
        self.issues.append({"kind": kind, "row_id": str(row_id), **detail})

    def __len__(self) -> int:
        return len(self.issues)


# ── small numeric helpers ─────────────────────────────────────────────────────


def _round(value: float | None, digits: int = 2) -> float | None:
    return None if value is None else round(value, digits)


def percentage(part: float, whole: float) -> float | None:
    """``part / whole * 100`` clamped to [0, 100]; ``None`` when ``whole`` is 0."""
    if not whole:
        return None
    return max(0.0, min(100.0, part / whole * 100))


def mean(values: Sequence[float]) -> float | None:
    return sum(values) / len(values) if values else None


def completion_rate(completed: int, total: int) -> float | None:
    return _round(percentage(completed, total))


def attempt_percentage(attempt: AttemptRow, log: QualityLog | None = None) -> float | None:
    """Score percentage of one finalized attempt, or ``None`` if it cannot count."""
    if attempt.score is None:
        if attempt.status == "SUBMITTED" and log is not None:
            log.flag("null_score", attempt.id, status=attempt.status)
        return None
    if attempt.total_questions <= 0:
        if log is not None:
            log.flag("invalid_total_questions", attempt.id, total_questions=attempt.total_questions)
        return None
    if attempt.score < 0 or attempt.score > attempt.total_questions:
        if log is not None:
            log.flag(
                "score_out_of_range",
                attempt.id,
                score=attempt.score,
                total_questions=attempt.total_questions,
            )
        return None
    return attempt.score / attempt.total_questions * 100


def attempt_duration_seconds(attempt: AttemptRow) -> float | None:
    """Recorded time taken, falling back to submission minus start."""
    if attempt.time_taken_seconds is not None:
        return float(max(0, attempt.time_taken_seconds))
    if attempt.submitted_at is not None and attempt.started_at is not None:
        return max(0.0, (attempt.submitted_at - attempt.started_at).total_seconds())
    return None


def completed_at(attempt: AttemptRow) -> datetime:
    return attempt.submitted_at or attempt.started_at


def scored_attempts(
    attempts: Iterable[AttemptRow], log: QualityLog
) -> list[tuple[AttemptRow, float]]:
    """Finalized attempts with a usable score, paired with their percentage."""
    result = []
    for a in attempts:
        if not a.is_finalized:
            continue
        pct = attempt_percentage(a, log)
        if pct is not None:
            result.append((a, pct))
    return result


def valid_finalized(attempts: Iterable[AttemptRow], log: QualityLog) -> list[AttemptRow]:
    """Finalized attempts that may feed aggregates.

    An ``EXPIRED`` attempt without a score still counts for its answers and
    duration; any other unreadable score drops the attempt.
    """
    return [
        a
        for a in attempts
        if a.is_finalized
        and (attempt_percentage(a, log) is not None or (a.status == "EXPIRED" and a.score is None))
    ]


def usable_answers(
    attempts: Iterable[AttemptRow], answers: Iterable[AnswerRow], log: QualityLog
) -> list[AnswerRow]:
    ids = {a.id for a in valid_finalized(attempts, log)}
    return [ans for ans in answers if ans.attempt_id in ids]


@dataclass(frozen=True)
class ScoreStats:
    count: int
    average: float | None
    highest: float | None
    lowest: float | None


def score_statistics(percentages: Sequence[float]) -> ScoreStats:
    if not percentages:
        return ScoreStats(count=0, average=None, highest=None, lowest=None)
    return ScoreStats(
        count=len(percentages),
        average=_round(mean(percentages)),
        highest=_round(max(percentages)),
        lowest=_round(min(percentages)),
    )


# ── trend classification ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class TrendResult:
    label: TrendLabel
    improvement_rate: float | None
    insufficient_data: bool
    earlier_average: float | None = None
    later_average: float | None = None


def classify_trend(scores: Sequence[float], margin: float | None = None) -> TrendResult:
    """Classify a chronological score sequence.

    >>> classify_trend([40, 60, 90]).label
    <TrendLabel.IMPROVING: 'IMPROVING'>
    """
    if margin is None:
        margin = settings.TREND_MARGIN
    if len(scores) < 2:
        return TrendResult(TrendLabel.STABLE, None, True)

    split = len(scores) // 2
    earlier = mean(scores[:split])
    later = mean(scores[split:])
    diff = later - earlier
    if diff > margin:
        label = TrendLabel.IMPROVING
    elif diff < -margin:
        label = TrendLabel.DECLINING
    else:
        label = TrendLabel.STABLE
    return TrendResult(label, _round(diff), False, _round(earlier), _round(later))


def improvement_trend(
    user_id: uuid.UUID,
    attempts: Iterable[AttemptRow],
    log: QualityLog,
    margin: float | None = None,
) -> ImprovementTrend:
    scored = sorted(scored_attempts(attempts, log), key=lambda p: (completed_at(p[0]), str(p[0].id)))
    result = classify_trend([pct for _, pct in scored], margin)

    monthly: dict[str, list[float]] = defaultdict(list)
    for a, pct in scored:
        monthly[completed_at(a).strftime("%Y-%m")].append(pct)

    return ImprovementTrend(
        user_id=user_id,
        trend=result.label,
        improvement_rate=result.improvement_rate,
        insufficient_data=result.insufficient_data,
        earlier_average=result.earlier_average,
        later_average=result.later_average,
        score_progression=[
            ScorePoint(
                attempt_id=a.id,
                exam_id=a.exam_id,
                exam_title=a.exam_title,
                exam_date=completed_at(a),
                score=round(pct, 2),
            )
            for a, pct in scored
        ],
        periods=[
            TrendPeriod(period=period, average_score=round(mean(values), 2), attempts_count=len(values))
            for period, values in sorted(monthly.items())
        ],
    )


# ── answer resolution ─────────────────────────────────────────────────────────


def _resolve(
    answer: AnswerRow,
    questions: dict[uuid.UUID, QuestionRow],
    topics: dict[uuid.UUID, TopicRow],
    log: QualityLog,
    require_topic: bool = True,
) -> tuple[QuestionRow, TopicRow | None] | None:
    question = questions.get(answer.question_id)
    if question is None:
        log.flag("unresolvable_question", answer.id, question_id=str(answer.question_id))
        return None
    topic = topics.get(question.topic_id) if question.topic_id is not None else None
    if topic is None and require_topic:
        log.flag("unresolvable_topic", question.id, topic_id=str(question.topic_id))
        return None
    return question, topic


def _is_correct(answer: AnswerRow, question: QuestionRow) -> bool:
    if answer.is_correct is not None:
        return bool(answer.is_correct)
    return answer.selected_option_index == question.correct_answer_index


def _group_answers(answers: Iterable[AnswerRow]) -> dict[uuid.UUID, list[AnswerRow]]:
    grouped: dict[uuid.UUID, list[AnswerRow]] = defaultdict(list)
    for ans in answers:
        grouped[ans.attempt_id].append(ans)
    return grouped


def _answer_times(attempt: AttemptRow, answered: list[AnswerRow]) -> dict[uuid.UUID, float]:
    """Seconds spent per answer.

    Uses per-answer timestamps when every answer has one, otherwise splits the
    attempt's duration evenly.
    """
    if not answered:
        return {}
    if all(a.answered_at is not None for a in answered):
        times = {}
        previous = attempt.started_at
        for ans in sorted(answered, key=lambda a: (a.answered_at, str(a.id))):
            times[ans.id] = max(0.0, (ans.answered_at - previous).total_seconds())
            previous = ans.answered_at
        return times
    duration = attempt_duration_seconds(attempt)
    if duration is None:
        return {}
    share = duration / len(answered)
    return {ans.id: share for ans in answered}


# ── topic rollup ──────────────────────────────────────────────────────────────


def topic_rollup(
    attempts: Iterable[AttemptRow],
    answers: Iterable[AnswerRow],
    questions: dict[uuid.UUID, QuestionRow],
    topics: dict[uuid.UUID, TopicRow],
    log: QualityLog,
) -> list[TopicPerformance]:
    finalized = {a.id: a for a in valid_finalized(attempts, log)}
    attempted: dict[uuid.UUID, int] = defaultdict(int)
    correct: dict[uuid.UUID, int] = defaultdict(int)
    time_sum: dict[uuid.UUID, float] = defaultdict(float)
    timed: dict[uuid.UUID, int] = defaultdict(int)

    for attempt_id, rows in _group_answers(answers).items():
        attempt = finalized.get(attempt_id)
        if attempt is None:
            continue
        answered = [a for a in rows if a.selected_option_index is not None]
        times = _answer_times(attempt, answered)
        for ans in answered:
            resolved = _resolve(ans, questions, topics, log)
            if resolved is None:
                continue
            question, topic = resolved
            attempted[topic.id] += 1
            if _is_correct(ans, question):
                correct[topic.id] += 1
            if ans.id in times:
                time_sum[topic.id] += times[ans.id]
                timed[topic.id] += 1

    result = [
        TopicPerformance(
            topic_id=topic_id,
            topic_name=topics[topic_id].name,
            total_questions_attempted=count,
            correct_answers=correct[topic_id],
            accuracy_percentage=_round(percentage(correct[topic_id], count)),
            average_time_per_question_seconds=_round(
                time_sum[topic_id] / timed[topic_id] if timed[topic_id] else None
            ),
        )
        for topic_id, count in attempted.items()
    ]
    result.sort(key=lambda t: (t.topic_name, str(t.topic_id)))
    return result


# ── question difficulty ───────────────────────────────────────────────────────


def question_accuracy(
    answers: Iterable[AnswerRow],
    questions: dict[uuid.UUID, QuestionRow],
    log: QualityLog,
    threshold: float | None = None,
    min_attempts: int | None = None,
) -> list[QuestionAnalytics]:
    """Per-question accuracy; low-accuracy questions are flagged for review.

    ``answers`` must already be restricted to finalized attempts and to the
    wanted scope (one exam, or system-wide). Hardest questions come first.
    """
    if threshold is None:
        threshold = settings.LOW_ACCURACY_THRESHOLD
    if min_attempts is None:
        min_attempts = settings.REVIEW_MIN_ATTEMPTS

    totals: dict[uuid.UUID, int] = defaultdict(int)
    correct: dict[uuid.UUID, int] = defaultdict(int)
    for ans in answers:
        if ans.selected_option_index is None:
            continue
        question = questions.get(ans.question_id)
        if question is None:
            log.flag("unresolvable_question", ans.id, question_id=str(ans.question_id))
            continue
        totals[question.id] += 1
        if _is_correct(ans, question):
            correct[question.id] += 1

    result = []
    for qid, total in totals.items():
        accuracy = percentage(correct[qid], total)
        result.append(
            QuestionAnalytics(
                question_id=qid,
                question_text=questions[qid].question_text,
                topic_id=questions[qid].topic_id,
                correct_answers=correct[qid],
                total_attempts=total,
                accuracy_percentage=_round(accuracy),
                needs_review=total >= min_attempts and accuracy is not None and accuracy < threshold,
            )
        )
    result.sort(key=lambda q: (q.accuracy_percentage, str(q.question_id)))
    return result


# ── topic ranking ─────────────────────────────────────────────────────────────


def rank_topics(
    answers: Iterable[AnswerRow],
    questions: dict[uuid.UUID, QuestionRow],
    topics: dict[uuid.UUID, TopicRow],
    log: QualityLog,
    limit: int | None = None,
    attempts: Iterable[AttemptRow] | None = None,
) -> list[TopTopic]:
    """Rank topics by the mean of accuracy and popularity.

    Popularity is the topic's attempt count relative to the most attempted
    topic. Ties go to the topic with more questions, then to the smaller id.
    When ``attempts`` is given, only answers of its usable finalized attempts
    count.
    """
    if limit is None:
        limit = settings.TOP_TOPICS_LIMIT
    if attempts is not None:
        answers = usable_answers(attempts, answers, log)

    question_counts: dict[uuid.UUID, int] = defaultdict(int)
    for q in questions.values():
        if q.topic_id is not None:
            question_counts[q.topic_id] += 1

    attempted: dict[uuid.UUID, int] = defaultdict(int)
    correct: dict[uuid.UUID, int] = defaultdict(int)
    for ans in answers:
        if ans.selected_option_index is None:
            continue
        resolved = _resolve(ans, questions, topics, log)
        if resolved is None:
            continue
        question, topic = resolved
        attempted[topic.id] += 1
        if _is_correct(ans, question):
            correct[topic.id] += 1

    if not attempted:
        return []
    most = max(attempted.values())

    ranked = []
    for topic_id, count in attempted.items():
        accuracy = percentage(correct[topic_id], count) or 0.0
        popularity = count / most * 100
        ranked.append(
            TopTopic(
                topic_id=topic_id,
                topic_name=topics[topic_id].name,
                total_questions=question_counts[topic_id],
                total_attempts=count,
                correct_answers=correct[topic_id],
                average_accuracy=round(accuracy, 2),
                popularity=round(popularity, 2),
                composite_score=round((accuracy + popularity) / 2, 2),
            )
        )
    ranked.sort(key=lambda t: (-t.composite_score, -t.total_questions, str(t.topic_id)))
    return ranked[:limit]


# ── usage & engagement ────────────────────────────────────────────────────────


def exam_usage(
    exams: Iterable[ExamRow], attempts: Sequence[AttemptRow], log: QualityLog
) -> list[ExamUsage]:
    by_exam: dict[uuid.UUID, list[AttemptRow]] = defaultdict(list)
    for a in attempts:
        by_exam[a.exam_id].append(a)
    all_attempts = len(attempts)

    usage = []
    for exam in exams:
        rows = by_exam.get(exam.id, [])
        finalized = [a for a in rows if a.is_finalized]
        stats = score_statistics([pct for _, pct in scored_attempts(rows, log)])
        usage.append(
            ExamUsage(
                exam_id=exam.id,
                exam_title=exam.title,
                total_attempts=len(rows),
                completed_attempts=len(finalized),
                unique_users=len({a.user_id for a in rows}),
                completion_rate=completion_rate(len(finalized), len(rows)),
                average_score=stats.average,
                popularity=_round(percentage(len(rows), all_attempts)),
            )
        )
    usage.sort(key=lambda u: (-u.total_attempts, u.exam_title, str(u.exam_id)))
    return usage


def user_engagement(attempts: Sequence[AttemptRow], now: datetime) -> UserEngagement:
    def active_since(delta: timedelta) -> int:
        cutoff = now - delta
        return len({a.user_id for a in attempts if a.started_at and a.started_at >= cutoff})

    users_with_attempts = len({a.user_id for a in attempts})
    return UserEngagement(
        daily_active_users=active_since(timedelta(days=1)),
        weekly_active_users=active_since(timedelta(days=7)),
        monthly_active_users=active_since(timedelta(days=30)),
        average_attempts_per_user=_round(
            len(attempts) / users_with_attempts if users_with_attempts else None
        ),
    )


# ── per-attempt views ─────────────────────────────────────────────────────────


def history_item(attempt: AttemptRow, log: QualityLog) -> ExamHistoryItem:
    duration = attempt_duration_seconds(attempt)
    return ExamHistoryItem(
        attempt_id=attempt.id,
        exam_id=attempt.exam_id,
        exam_title=attempt.exam_title,
        score=attempt.score,
        total_questions=attempt.total_questions,
        score_percentage=_round(attempt_percentage(attempt, log)),
        started_at=attempt.started_at,
        submitted_at=attempt.submitted_at,
        time_taken_minutes=_round(duration / 60 if duration is not None else None),
        status=attempt.status,
    )


def attempt_view(
    attempt: AttemptRow,
    answers: Sequence[AnswerRow],
    questions: dict[uuid.UUID, QuestionRow],
    topics: dict[uuid.UUID, TopicRow],
    log: QualityLog,
) -> AttemptView:
    """Tagged view of an attempt; answer detail only once the attempt is finalized."""
    common = dict(
        attempt_id=attempt.id,
        exam_id=attempt.exam_id,
        exam_title=attempt.exam_title,
        user_id=attempt.user_id,
        total_questions=attempt.total_questions,
        started_at=attempt.started_at,
    )
    if not attempt.is_finalized:
        return InProgressView(
            answered_count=sum(1 for a in answers if a.selected_option_index is not None),
            **common,
        )

    details = []
    for ans in sorted(answers, key=lambda a: (a.answered_at is None, a.answered_at or attempt.started_at, str(a.id))):
        resolved = _resolve(ans, questions, topics, log, require_topic=False)
        question, topic = resolved if resolved is not None else (None, None)
        details.append(
            AnswerDetail(
                answer_id=ans.id,
                question_id=ans.question_id,
                question_text=question.question_text if question else None,
                topic_id=topic.id if topic else None,
                topic_name=topic.name if topic else None,
                selected_option_index=ans.selected_option_index,
                is_correct=_is_correct(ans, question) if question else ans.is_correct,
                correct_answer_index=question.correct_answer_index if question else None,
                answered_at=ans.answered_at,
            )
        )
    return FinalizedView(
        status=attempt.status,
        score=attempt.score,
        score_percentage=_round(attempt_percentage(attempt, log)),
        time_taken_seconds=attempt.time_taken_seconds,
        submitted_at=attempt.submitted_at,
        answers=details,
        **common,
    )


def _recent_attempt(attempt: AttemptRow, log: QualityLog) -> RecentAttempt:
    return RecentAttempt(
        attempt_id=attempt.id,
        exam_id=attempt.exam_id,
        exam_title=attempt.exam_title,
        score=attempt.score,
        total_questions=attempt.total_questions,
        score_percentage=_round(attempt_percentage(attempt, log)),
        time_taken_seconds=attempt.time_taken_seconds,
        completed_at=attempt.submitted_at,
        status=attempt.status,
    )


# ── top-level analytics ───────────────────────────────────────────────────────


def user_performance(
    user: UserRow,
    attempts: Sequence[AttemptRow],
    answers: Sequence[AnswerRow],
    questions: dict[uuid.UUID, QuestionRow],
    topics: dict[uuid.UUID, TopicRow],
    log: QualityLog,
    margin: float | None = None,
    recent_limit: int | None = None,
) -> UserPerformanceSnapshot:
    if recent_limit is None:
        recent_limit = settings.RECENT_ATTEMPTS_LIMIT

    finalized = [a for a in attempts if a.is_finalized]
    usable = valid_finalized(finalized, log)
    stats = score_statistics([pct for _, pct in scored_attempts(usable, log)])
    durations = [d for d in (attempt_duration_seconds(a) for a in usable) if d is not None]
    trend = improvement_trend(user.id, usable, log, margin)
    recent = sorted(finalized, key=lambda a: (completed_at(a), str(a.id)), reverse=True)

    return UserPerformanceSnapshot(
        user_id=user.id,
        user_name=user.name,
        total_exams_taken=len(attempts),
        completed_exams=len(finalized),
        in_progress_exams=len(attempts) - len(finalized),
        completion_rate=completion_rate(len(finalized), len(attempts)),
        average_score=stats.average,
        best_score=stats.highest,
        total_time_spent_seconds=int(sum(durations)),
        average_time_spent_seconds=_round(mean(durations)),
        trend=trend.trend,
        trend_insufficient_data=trend.insufficient_data,
        improvement_rate=trend.improvement_rate,
        topic_performance=topic_rollup(usable, answers, questions, topics, log),
        recent_attempts=[_recent_attempt(a, log) for a in recent[:recent_limit]],
    )


def exam_analytics(
    exam: ExamRow,
    attempts: Sequence[AttemptRow],
    answers: Sequence[AnswerRow],
    questions: dict[uuid.UUID, QuestionRow],
    log: QualityLog,
    threshold: float | None = None,
    min_attempts: int | None = None,
) -> ExamAnalytics:
    finalized = [a for a in attempts if a.is_finalized]
    usable = valid_finalized(finalized, log)
    stats = score_statistics([pct for _, pct in scored_attempts(usable, log)])
    durations = [d for d in (attempt_duration_seconds(a) for a in usable) if d is not None]
    per_question = question_accuracy(
        usable_answers(usable, answers, log),
        questions,
        log,
        threshold,
        min_attempts,
    )
    avg_duration = mean(durations)

    return ExamAnalytics(
        exam_id=exam.id,
        exam_title=exam.title,
        total_attempts=len(attempts),
        completed_attempts=len(finalized),
        in_progress_attempts=len(attempts) - len(finalized),
        unique_users=len({a.user_id for a in attempts}),
        completion_rate=completion_rate(len(finalized), len(attempts)),
        average_score=stats.average,
        highest_score=stats.highest,
        lowest_score=stats.lowest,
        average_completion_time_minutes=_round(avg_duration / 60 if avg_duration is not None else None),
        question_analytics=per_question,
        review_candidates=sum(1 for q in per_question if q.needs_review),
    )


def system_analytics(
    users: Sequence[UserRow],
    exams: Sequence[ExamRow],
    topics: dict[uuid.UUID, TopicRow],
    questions: dict[uuid.UUID, QuestionRow],
    attempts: Sequence[AttemptRow],
    answers: Sequence[AnswerRow],
    now: datetime,
    log: QualityLog,
    top_limit: int | None = None,
) -> SystemAnalytics:
    finalized = [a for a in attempts if a.is_finalized]
    stats = score_statistics([pct for _, pct in scored_attempts(finalized, log)])
    answers = usable_answers(finalized, answers, log)

    return SystemAnalytics(
        total_users=len(users),
        active_users=sum(1 for u in users if u.is_enrolled),
        total_students=sum(1 for u in users if u.role == "STUDENT"),
        total_exams=len(exams),
        total_topics=len(topics),
        total_questions=len(questions),
        total_attempts=len(attempts),
        completed_attempts=len(finalized),
        system_completion_rate=completion_rate(len(finalized), len(attempts)),
        average_system_score=stats.average,
        top_performing_topics=rank_topics(answers, questions, topics, log, top_limit),
        exam_usage_stats=exam_usage(exams, attempts, log),
        user_engagement=user_engagement(attempts, now),
        questions_needing_review=[
            q for q in question_accuracy(answers, questions, log) if q.needs_review
        ],
    )
