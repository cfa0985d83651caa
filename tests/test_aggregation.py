"""Unit tests for the pure aggregation functions (no DB, no cache)."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from exam_analytics.schemas.analytics import FinalizedView, InProgressView, TrendLabel
from exam_analytics.services import aggregation
from exam_analytics.services.aggregation import QualityLog, classify_trend
from exam_analytics.services.rows import (
    AnswerRow,
    AttemptRow,
    ExamRow,
    QuestionRow,
    TopicRow,
    UserRow,
)

START = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


# ── Helpers ────────────────────────────────────────────────────────────────────


def _attempt(score=None, total=10, status="SUBMITTED", day=0, time_taken=600, user_id=None, exam_id=None):
    started = START + timedelta(days=day)
    finalized = status != "IN_PROGRESS"
    return AttemptRow(
        id=uuid.uuid4(),
        exam_id=exam_id or uuid.uuid4(),
        user_id=user_id or uuid.uuid4(),
        status=status,
        score=score,
        total_questions=total,
        time_taken_seconds=time_taken if finalized else None,
        started_at=started,
        submitted_at=started + timedelta(seconds=time_taken or 0) if finalized else None,
        exam_title="Exam",
    )


def _answer(attempt, question, selected=0, is_correct=None, answered_at=None):
    return AnswerRow(
        id=uuid.uuid4(),
        attempt_id=attempt.id,
        question_id=question.id if isinstance(question, QuestionRow) else question,
        selected_option_index=selected,
        is_correct=is_correct,
        answered_at=answered_at,
    )


def _question(topic, correct=0):
    return QuestionRow(
        id=uuid.uuid4(),
        topic_id=topic.id if topic else None,
        question_text="Q?",
        correct_answer_index=correct,
    )


# ── Trend classification ───────────────────────────────────────────────────────


class TestClassifyTrend:
    def test_improving_example(self):
        result = classify_trend([40, 60, 90])
        # earlier = [40], later = [60, 90] → 75 - 40 = 35
        assert result.label == TrendLabel.IMPROVING
        assert result.improvement_rate == 35.0
        assert result.insufficient_data is False

    def test_declining(self):
        assert classify_trend([90, 80, 50, 40]).label == TrendLabel.DECLINING

    def test_within_margin_is_stable(self):
        result = classify_trend([70, 72, 71, 74])
        assert result.label == TrendLabel.STABLE

    def test_exact_margin_is_stable(self):
        assert classify_trend([50, 55], margin=5).label == TrendLabel.STABLE
        assert classify_trend([50, 55.01], margin=5).label == TrendLabel.IMPROVING

    @pytest.mark.parametrize("scores", [[], [80]])
    def test_insufficient_data(self, scores):
        result = classify_trend(scores)
        assert result.label == TrendLabel.STABLE
        assert result.insufficient_data is True
        assert result.improvement_rate is None

    def test_constant_shift_keeps_label_and_rate(self):
        scores = [30, 35, 50, 65, 70]
        base = classify_trend(scores)
        shifted = classify_trend([s + 20 for s in scores])
        assert shifted.label == base.label
        assert shifted.improvement_rate == base.improvement_rate

    def test_improvement_trend_orders_by_completion_time(self):
        user_id = uuid.uuid4()
        # Inserted out of order; only finalized attempts with scores count.
        attempts = [
            _attempt(score=9, day=25),
            _attempt(score=4, day=0),
            _attempt(score=6, day=10),
            _attempt(status="IN_PROGRESS", day=30),
        ]
        trend = aggregation.improvement_trend(user_id, attempts, QualityLog())
        assert [p.score for p in trend.score_progression] == [40.0, 60.0, 90.0]
        assert trend.trend == TrendLabel.IMPROVING
        assert [p.period for p in trend.periods] == ["2026-01", "2026-02"]


# ── Numeric helpers ────────────────────────────────────────────────────────────


class TestHelpers:
    def test_percentage_no_data(self):
        assert aggregation.percentage(3, 0) is None

    def test_percentage_is_clamped(self):
        assert aggregation.percentage(12, 10) == 100.0
        assert aggregation.percentage(-1, 10) == 0.0

    def test_score_out_of_range_is_flagged_and_skipped(self):
        log = QualityLog()
        bad = _attempt(score=12, total=10)
        assert aggregation.attempt_percentage(bad, log) is None
        assert log.issues[0]["kind"] == "score_out_of_range"

    def test_null_score_on_submitted_attempt_is_flagged(self):
        log = QualityLog()
        assert aggregation.attempt_percentage(_attempt(score=None), log) is None
        assert [i["kind"] for i in log.issues] == ["null_score"]

    def test_expired_attempt_without_score_is_not_an_anomaly(self):
        log = QualityLog()
        assert aggregation.attempt_percentage(_attempt(score=None, status="EXPIRED"), log) is None
        assert len(log) == 0

    def test_duplicate_flags_are_collapsed(self):
        log = QualityLog()
        log.flag("null_score", "a1")
        log.flag("null_score", "a1")
        assert len(log) == 1


# ── Topic rollup ───────────────────────────────────────────────────────────────


class TestTopicRollup:
    def test_accuracy_and_even_time_split(self):
        algebra = TopicRow(id=uuid.uuid4(), name="Algebra")
        geometry = TopicRow(id=uuid.uuid4(), name="Geometry")
        q1, q2, q3 = _question(algebra), _question(algebra), _question(geometry)
        attempt = _attempt(score=2, total=3, time_taken=300)
        answers = [
            _answer(attempt, q1, is_correct=True),
            _answer(attempt, q2, is_correct=False),
            _answer(attempt, q3, is_correct=True),
        ]
        questions = {q.id: q for q in (q1, q2, q3)}
        topics = {algebra.id: algebra, geometry.id: geometry}

        rollup = aggregation.topic_rollup([attempt], answers, questions, topics, QualityLog())

        by_name = {t.topic_name: t for t in rollup}
        assert by_name["Algebra"].total_questions_attempted == 2
        assert by_name["Algebra"].correct_answers == 1
        assert by_name["Algebra"].accuracy_percentage == 50.0
        assert by_name["Algebra"].average_time_per_question_seconds == 100.0
        assert by_name["Geometry"].accuracy_percentage == 100.0

    def test_per_answer_timestamps_are_used_when_present(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q1, q2 = _question(topic), _question(topic)
        attempt = _attempt(score=2, total=2, time_taken=600)
        answers = [
            _answer(attempt, q1, is_correct=True, answered_at=attempt.started_at + timedelta(seconds=30)),
            _answer(attempt, q2, is_correct=True, answered_at=attempt.started_at + timedelta(seconds=120)),
        ]
        rollup = aggregation.topic_rollup(
            [attempt], answers, {q1.id: q1, q2.id: q2}, {topic.id: topic}, QualityLog()
        )
        # 30s for the first answer, 90s for the second
        assert rollup[0].average_time_per_question_seconds == 60.0

    def test_in_progress_and_unanswered_are_ignored(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        live = _attempt(status="IN_PROGRESS")
        done = _attempt(score=0, total=1)
        answers = [_answer(live, q, is_correct=True), _answer(done, q, selected=None)]
        rollup = aggregation.topic_rollup([live, done], answers, {q.id: q}, {topic.id: topic}, QualityLog())
        assert rollup == []

    def test_unresolvable_question_is_skipped_and_flagged(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        attempt = _attempt(score=1, total=2)
        answers = [_answer(attempt, q, is_correct=True), _answer(attempt, uuid.uuid4(), is_correct=True)]
        log = QualityLog()
        rollup = aggregation.topic_rollup([attempt], answers, {q.id: q}, {topic.id: topic}, log)
        assert rollup[0].total_questions_attempted == 1
        assert [i["kind"] for i in log.issues] == ["unresolvable_question"]

    def test_correctness_falls_back_to_answer_key(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic, correct=2)
        attempt = _attempt(score=1, total=1)
        answers = [_answer(attempt, q, selected=2)]
        rollup = aggregation.topic_rollup([attempt], answers, {q.id: q}, {topic.id: topic}, QualityLog())
        assert rollup[0].correct_answers == 1


# ── Question accuracy & topic ranking ─────────────────────────────────────────


class TestQuestionAccuracy:
    def test_low_accuracy_questions_need_review(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        easy, hard = _question(topic), _question(topic)
        answers = []
        for i in range(4):
            attempt = _attempt(score=1, total=2)
            answers.append(_answer(attempt, easy, is_correct=True))
            answers.append(_answer(attempt, hard, is_correct=i == 0))

        result = aggregation.question_accuracy(answers, {easy.id: easy, hard.id: hard}, QualityLog())

        assert result[0].question_id == hard.id  # hardest first
        assert result[0].accuracy_percentage == 25.0
        assert result[0].needs_review is True
        assert result[1].needs_review is False

    def test_too_few_attempts_are_not_flagged(self):
        q = _question(TopicRow(id=uuid.uuid4(), name="Algebra"))
        answers = [_answer(_attempt(score=0, total=1), q, is_correct=False)]
        result = aggregation.question_accuracy(answers, {q.id: q}, QualityLog())
        assert result[0].needs_review is False


class TestRankTopics:
    def test_composite_ranking(self):
        popular = TopicRow(id=uuid.uuid4(), name="Popular")
        accurate = TopicRow(id=uuid.uuid4(), name="Accurate")
        qp, qa = _question(popular), _question(accurate)
        attempt = _attempt(score=1, total=5)
        answers = [_answer(attempt, qp, is_correct=i == 0) for i in range(4)]
        answers.append(_answer(attempt, qa, is_correct=True))

        ranked = aggregation.rank_topics(
            answers, {qp.id: qp, qa.id: qa}, {popular.id: popular, accurate.id: accurate}, QualityLog()
        )

        # Popular: accuracy 25, popularity 100 → 62.5; Accurate: 100, 25 → 62.5
        assert ranked[0].composite_score == ranked[1].composite_score == 62.5

    def test_ties_go_to_more_questions_then_smaller_id(self):
        ids = sorted([uuid.uuid4(), uuid.uuid4(), uuid.uuid4()], key=str)
        small, mid, big = (TopicRow(id=i, name=f"T{n}") for n, i in enumerate(ids))
        questions = {}
        answers = []
        attempt = _attempt(score=3, total=3)
        for topic, extra in ((small, 0), (mid, 0), (big, 1)):
            q = _question(topic)
            questions[q.id] = q
            answers.append(_answer(attempt, q, is_correct=True))
            for _ in range(extra):
                spare = _question(topic)
                questions[spare.id] = spare

        ranked = aggregation.rank_topics(
            answers, questions, {t.id: t for t in (small, mid, big)}, QualityLog()
        )
        assert [t.topic_id for t in ranked] == [big.id, small.id, mid.id]

    def test_limit_and_empty(self):
        assert aggregation.rank_topics([], {}, {}, QualityLog()) == []


# ── Exam / user / system rollups ───────────────────────────────────────────────


class TestRollups:
    def test_exam_with_no_attempts_reports_no_data(self):
        exam = ExamRow(id=uuid.uuid4(), title="Empty")
        result = aggregation.exam_analytics(exam, [], [], {}, QualityLog())
        assert result.total_attempts == 0
        assert result.average_score is None
        assert result.completion_rate is None
        assert result.average_completion_time_minutes is None

    def test_in_progress_attempts_only_count_towards_totals(self):
        exam = ExamRow(id=uuid.uuid4(), title="Mixed")
        attempts = [
            _attempt(score=8, exam_id=exam.id),
            _attempt(score=6, exam_id=exam.id),
            _attempt(status="IN_PROGRESS", exam_id=exam.id),
        ]
        result = aggregation.exam_analytics(exam, attempts, [], {}, QualityLog())
        assert result.total_attempts == 3
        assert result.completed_attempts == 2
        assert result.in_progress_attempts == 1
        assert result.completion_rate == 66.67
        assert result.average_score == 70.0
        assert result.highest_score == 80.0
        assert result.lowest_score == 60.0

    def test_user_snapshot(self):
        user = UserRow(id=uuid.uuid4(), name="Ada", email="ada@ex.com", role="STUDENT", is_enrolled=True)
        attempts = [
            _attempt(score=5, day=0, user_id=user.id),
            _attempt(score=9, day=1, user_id=user.id, time_taken=300),
            _attempt(status="IN_PROGRESS", day=2, user_id=user.id),
        ]
        snap = aggregation.user_performance(user, attempts, [], {}, {}, QualityLog())
        assert snap.total_exams_taken == 3
        assert snap.completed_exams == 2
        assert snap.average_score == 70.0
        assert snap.best_score == 90.0
        assert snap.total_time_spent_seconds == 900
        assert snap.trend == TrendLabel.IMPROVING
        assert snap.recent_attempts[0].score == 9

    def test_user_without_attempts(self):
        user = UserRow(id=uuid.uuid4(), name="New", email="new@ex.com", role="STUDENT", is_enrolled=True)
        snap = aggregation.user_performance(user, [], [], {}, {}, QualityLog())
        assert snap.average_score is None
        assert snap.trend_insufficient_data is True
        assert snap.total_time_spent_seconds == 0

    def test_engagement_windows(self):
        now = START + timedelta(days=40)
        u1, u2, u3 = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        attempts = [
            _attempt(score=5, day=40, user_id=u1),
            _attempt(score=5, day=35, user_id=u2),
            _attempt(score=5, day=0, user_id=u3),
            _attempt(score=5, day=1, user_id=u3),
        ]
        # day=40 started exactly at `now`
        engagement = aggregation.user_engagement(attempts, now)
        assert engagement.daily_active_users == 1
        assert engagement.weekly_active_users == 2
        assert engagement.monthly_active_users == 2
        assert engagement.average_attempts_per_user == 1.33

    def test_exam_usage_popularity(self):
        busy = ExamRow(id=uuid.uuid4(), title="Busy")
        quiet = ExamRow(id=uuid.uuid4(), title="Quiet")
        attempts = [
            _attempt(score=5, exam_id=busy.id),
            _attempt(score=7, exam_id=busy.id),
            _attempt(status="IN_PROGRESS", exam_id=busy.id),
            _attempt(score=10, exam_id=quiet.id),
        ]
        usage = aggregation.exam_usage([quiet, busy], attempts, QualityLog())
        assert [u.exam_title for u in usage] == ["Busy", "Quiet"]
        assert usage[0].popularity == 75.0
        assert usage[0].completion_rate == 66.67
        assert usage[0].average_score == 60.0


class TestUnusableAttempts:
    """Finalized attempts whose score cannot be read feed no aggregate."""

    def test_null_score_submission_is_left_out_of_topic_rollup(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        broken = _attempt(score=None, time_taken=6000)
        log = QualityLog()

        rollup = aggregation.topic_rollup([broken], [_answer(broken, q, is_correct=False)], {q.id: q}, {topic.id: topic}, log)

        assert rollup == []
        assert [i["kind"] for i in log.issues] == ["null_score"]

    def test_expired_without_score_still_counts_its_answers(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        expired = _attempt(score=None, status="EXPIRED")
        log = QualityLog()

        rollup = aggregation.topic_rollup([expired], [_answer(expired, q, is_correct=True)], {q.id: q}, {topic.id: topic}, log)

        assert rollup[0].correct_answers == 1
        assert log.issues == []

    def test_exam_times_and_questions_skip_null_score_submission(self):
        exam = ExamRow(id=uuid.uuid4(), title="Final")
        q = _question(TopicRow(id=uuid.uuid4(), name="Algebra"))
        good = _attempt(score=5, exam_id=exam.id, time_taken=600)
        broken = _attempt(score=None, exam_id=exam.id, time_taken=6000)
        answers = [_answer(good, q, is_correct=True), _answer(broken, q, is_correct=False)]
        log = QualityLog()

        result = aggregation.exam_analytics(exam, [good, broken], answers, {q.id: q}, log)

        assert result.completed_attempts == 2
        assert result.average_score == 50.0
        assert result.average_completion_time_minutes == 10.0
        assert [(qa.total_attempts, qa.accuracy_percentage) for qa in result.question_analytics] == [(1, 100.0)]
        assert [i["kind"] for i in log.issues] == ["null_score"]

    def test_user_snapshot_skips_attempt_without_questions(self):
        user = UserRow(id=uuid.uuid4(), name="Ada", email="ada@ex.com", role="STUDENT", is_enrolled=True)
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        good = _attempt(score=8, user_id=user.id, time_taken=600)
        broken = _attempt(score=1, total=0, user_id=user.id, time_taken=6000)
        answers = [_answer(good, q, is_correct=True), _answer(broken, q, is_correct=False)]
        log = QualityLog()

        snap = aggregation.user_performance(user, [good, broken], answers, {q.id: q}, {topic.id: topic}, log)

        assert snap.completed_exams == 2
        assert snap.total_time_spent_seconds == 600
        assert snap.topic_performance[0].total_questions_attempted == 1
        assert snap.topic_performance[0].accuracy_percentage == 100.0
        assert [i["kind"] for i in log.issues] == ["invalid_total_questions"]

    def test_out_of_range_scores_do_not_flag_questions_for_review(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        broken = [_attempt(score=11, total=10) for _ in range(3)]
        answers = [_answer(a, q, is_correct=False) for a in broken]
        log = QualityLog()

        result = aggregation.system_analytics(
            [], [], {topic.id: topic}, {q.id: q}, broken, answers, START, log
        )

        assert result.completed_attempts == 3
        assert result.questions_needing_review == []
        assert result.top_performing_topics == []
        assert {i["kind"] for i in log.issues} == {"score_out_of_range"}

    def test_ranking_with_attempts_drops_unusable_answers(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        good = _attempt(score=1, total=1)
        broken = _attempt(score=None)
        answers = [_answer(good, q, is_correct=True), _answer(broken, q, is_correct=False)]

        ranked = aggregation.rank_topics(
            answers, {q.id: q}, {topic.id: topic}, QualityLog(), attempts=[good, broken]
        )

        assert ranked[0].total_attempts == 1
        assert ranked[0].average_accuracy == 100.0


# ── Tagged attempt views ───────────────────────────────────────────────────────


class TestAttemptView:
    def test_in_progress_view_has_no_answers(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic)
        attempt = _attempt(status="IN_PROGRESS")
        view = aggregation.attempt_view(
            attempt, [_answer(attempt, q), _answer(attempt, _question(topic), selected=None)],
            {q.id: q}, {topic.id: topic}, QualityLog(),
        )
        assert isinstance(view, InProgressView)
        assert view.answered_count == 1
        assert not hasattr(view, "answers")

    def test_finalized_view_carries_answers(self):
        topic = TopicRow(id=uuid.uuid4(), name="Algebra")
        q = _question(topic, correct=1)
        attempt = _attempt(score=1, total=1, status="EXPIRED")
        view = aggregation.attempt_view(attempt, [_answer(attempt, q, selected=1)], {q.id: q}, {topic.id: topic}, QualityLog())
        assert isinstance(view, FinalizedView)
        assert view.status == "EXPIRED"
        assert view.answers[0].is_correct is True
        assert view.answers[0].topic_name == "Algebra"
