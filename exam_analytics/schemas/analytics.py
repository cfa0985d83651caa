"""Analytics payload schemas.

Percentages are in ``[0, 100]``. ``None`` (JSON ``null``) is the "no data"
sentinel: it is what a mean or a rate reports when there is nothing to divide.
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class TrendLabel(str, enum.Enum):
    IMPROVING = "IMPROVING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


# ── Per-user ──────────────────────────────────────────────────────────────────


class TopicPerformance(BaseModel):
    topic_id: uuid.UUID
    topic_name: str
    total_questions_attempted: int
    correct_answers: int
    accuracy_percentage: float | None
    average_time_per_question_seconds: float | None


class UserTopics(BaseModel):
    user_id: uuid.UUID
    topics: list[TopicPerformance] = []


class ScorePoint(BaseModel):
    attempt_id: uuid.UUID
    exam_id: uuid.UUID
    exam_title: str | None = None
    exam_date: datetime
    score: float


class TrendPeriod(BaseModel):
    """Monthly rollup of the score progression."""

    period: str  # YYYY-MM
    average_score: float
    attempts_count: int


class ImprovementTrend(BaseModel):
    user_id: uuid.UUID
    trend: TrendLabel
    improvement_rate: float | None
    insufficient_data: bool
    earlier_average: float | None = None
    later_average: float | None = None
    score_progression: list[ScorePoint] = []
    periods: list[TrendPeriod] = []


class RecentAttempt(BaseModel):
    attempt_id: uuid.UUID
    exam_id: uuid.UUID
    exam_title: str | None
    score: int | None
    total_questions: int
    score_percentage: float | None
    time_taken_seconds: int | None
    completed_at: datetime | None
    status: str


class UserPerformanceSnapshot(BaseModel):
    user_id: uuid.UUID
    user_name: str
    total_exams_taken: int
    completed_exams: int
    in_progress_exams: int
    completion_rate: float | None
    average_score: float | None
    best_score: float | None
    total_time_spent_seconds: int
    average_time_spent_seconds: float | None
    trend: TrendLabel
    trend_insufficient_data: bool
    improvement_rate: float | None
    topic_performance: list[TopicPerformance] = []
    recent_attempts: list[RecentAttempt] = []


class ExamHistoryItem(BaseModel):
    attempt_id: uuid.UUID
    exam_id: uuid.UUID
    exam_title: str | None
    score: int | None
    total_questions: int
    score_percentage: float | None
    started_at: datetime
    submitted_at: datetime | None
    time_taken_minutes: float | None
    status: str


class ExamHistoryPage(BaseModel):
    user_id: uuid.UUID
    items: list[ExamHistoryItem] = []
    total: int
    skip: int
    take: int


# ── Detailed attempt views (tagged by status) ─────────────────────────────────


class AnswerDetail(BaseModel):
    answer_id: uuid.UUID
    question_id: uuid.UUID
    question_text: str | None
    topic_id: uuid.UUID | None
    topic_name: str | None
    selected_option_index: int | None
    is_correct: bool | None
    correct_answer_index: int | None
    answered_at: datetime | None


class _AttemptViewBase(BaseModel):
    attempt_id: uuid.UUID
    exam_id: uuid.UUID
    exam_title: str | None
    user_id: uuid.UUID
    total_questions: int
    started_at: datetime


class InProgressView(_AttemptViewBase):
    status: Literal["IN_PROGRESS"] = "IN_PROGRESS"
    answered_count: int


class FinalizedView(_AttemptViewBase):
    status: Literal["SUBMITTED", "EXPIRED"]
    score: int | None
    score_percentage: float | None
    time_taken_seconds: int | None
    submitted_at: datetime | None
    answers: list[AnswerDetail] = []


AttemptView = Annotated[Union[InProgressView, FinalizedView], Field(discriminator="status")]


class DetailedAttemptsPage(BaseModel):
    scope: Literal["user", "exam"]
    scope_id: uuid.UUID
    items: list[AttemptView] = []
    total: int
    skip: int
    take: int


# ── Per-exam ──────────────────────────────────────────────────────────────────


class QuestionAnalytics(BaseModel):
    question_id: uuid.UUID
    question_text: str
    topic_id: uuid.UUID | None
    correct_answers: int
    total_attempts: int
    accuracy_percentage: float | None
    needs_review: bool


class ExamAnalytics(BaseModel):
    exam_id: uuid.UUID
    exam_title: str
    total_attempts: int
    completed_attempts: int
    in_progress_attempts: int
    unique_users: int
    completion_rate: float | None
    average_score: float | None
    highest_score: float | None
    lowest_score: float | None
    average_completion_time_minutes: float | None
    question_analytics: list[QuestionAnalytics] = []
    review_candidates: int = 0


# ── System-wide ───────────────────────────────────────────────────────────────


class TopTopic(BaseModel):
    topic_id: uuid.UUID
    topic_name: str
    total_questions: int
    total_attempts: int
    correct_answers: int
    average_accuracy: float | None
    popularity: float
    composite_score: float


class TopTopics(BaseModel):
    topics: list[TopTopic] = []


class ExamUsage(BaseModel):
    exam_id: uuid.UUID
    exam_title: str
    total_attempts: int
    completed_attempts: int
    unique_users: int
    completion_rate: float | None
    average_score: float | None
    popularity: float | None


class ExamUsageList(BaseModel):
    exams: list[ExamUsage] = []


class UserEngagement(BaseModel):
    daily_active_users: int
    weekly_active_users: int
    monthly_active_users: int
    average_attempts_per_user: float | None


class SystemAnalytics(BaseModel):
    total_users: int
    active_users: int
    total_students: int
    total_exams: int
    total_topics: int
    total_questions: int
    total_attempts: int
    completed_attempts: int
    system_completion_rate: float | None
    average_system_score: float | None
    top_performing_topics: list[TopTopic] = []
    exam_usage_stats: list[ExamUsage] = []
    user_engagement: UserEngagement
    questions_needing_review: list[QuestionAnalytics] = []
