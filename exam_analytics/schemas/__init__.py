"""Pydantic schemas, re-exported for convenience."""

from exam_analytics.schemas.common import ErrorBody, ErrorResponse, SuccessResponse  # noqa: F401
from exam_analytics.schemas.analytics import (  # noqa: F401
    AttemptView,
    DetailedAttemptsPage,
    ExamAnalytics,
    ExamHistoryPage,
    ExamUsageList,
    FinalizedView,
    ImprovementTrend,
    InProgressView,
    SystemAnalytics,
    TopTopics,
    TrendLabel,
    UserPerformanceSnapshot,
    UserTopics,
)
