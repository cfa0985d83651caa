"""Analytics routes.

Every payload is wrapped in the success envelope and carries ``computed_at``
/ ``expires_at`` so callers can tell how fresh the numbers are.
"""

import uuid

from fastapi import APIRouter, Depends, Query

from exam_analytics.api.deps import (
    Principal,
    get_analytics_service,
    require_admin,
    require_self_or_admin,
)
from exam_analytics.schemas.common import SuccessResponse
from exam_analytics.services.analytics_service import AnalyticsService

router = APIRouter()


# ── Per-user (self or admin) ──────────────────────────────────────────────────


@router.get("/users/{user_id}", response_model=SuccessResponse)
async def get_user_performance(
    user_id: uuid.UUID,
    _principal: Principal = Depends(require_self_or_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """Performance snapshot: counts, scores, time spent, trend, topic breakdown."""
    result = await service.user_performance(user_id)
    return SuccessResponse(data=result.to_data())


@router.get("/users/{user_id}/history", response_model=SuccessResponse)
async def get_user_history(
    user_id: uuid.UUID,
    skip: int = Query(0, description="Number of attempts to skip"),
    take: int | None = Query(None, description="Page size (capped at 100)"),
    _principal: Principal = Depends(require_self_or_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """Finalized attempts, most recent first."""
    result = await service.user_history(user_id, skip, take)
    return SuccessResponse(data=result.to_data())


@router.get("/users/{user_id}/topics", response_model=SuccessResponse)
async def get_user_topics(
    user_id: uuid.UUID,
    _principal: Principal = Depends(require_self_or_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    result = await service.user_topics(user_id)
    return SuccessResponse(data=result.to_data())


@router.get("/users/{user_id}/trend", response_model=SuccessResponse)
async def get_user_trend(
    user_id: uuid.UUID,
    _principal: Principal = Depends(require_self_or_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    result = await service.user_trend(user_id)
    return SuccessResponse(data=result.to_data())


@router.get("/users/{user_id}/attempts/detailed", response_model=SuccessResponse)
async def get_user_attempts_detailed(
    user_id: uuid.UUID,
    skip: int = Query(0),
    take: int | None = Query(None),
    _admin: Principal = Depends(require_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """All of a user's attempts; per-answer detail only for finalized ones."""
    result = await service.user_attempts_detailed(user_id, skip, take)
    return SuccessResponse(data=result.to_data())


# ── Exams (admin) ─────────────────────────────────────────────────────────────
# ``/exams/usage`` must be registered before ``/exams/{exam_id}``.


@router.get("/exams/usage", response_model=SuccessResponse)
async def get_exam_usage(
    _admin: Principal = Depends(require_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """Usage statistics across all exams."""
    result = await service.exam_usage()
    return SuccessResponse(data=result.to_data())


@router.get("/exams/{exam_id}", response_model=SuccessResponse)
async def get_exam_analytics(
    exam_id: uuid.UUID,
    _admin: Principal = Depends(require_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    result = await service.exam_analytics(exam_id)
    return SuccessResponse(data=result.to_data())


@router.get("/exams/{exam_id}/detailed", response_model=SuccessResponse)
async def get_exam_detailed(
    exam_id: uuid.UUID,
    attempt_id: uuid.UUID | None = Query(None, alias="attemptId"),
    skip: int = Query(0),
    take: int | None = Query(None),
    _admin: Principal = Depends(require_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    result = await service.exam_detailed(exam_id, attempt_id, skip, take)
    return SuccessResponse(data=result.to_data())


# ── System-wide (admin) ───────────────────────────────────────────────────────


@router.get("/system", response_model=SuccessResponse)
async def get_system_analytics(
    _admin: Principal = Depends(require_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    result = await service.system_analytics()
    return SuccessResponse(data=result.to_data())


@router.get("/topics/top-performing", response_model=SuccessResponse)
async def get_top_topics(
    limit: int | None = Query(None, ge=1, description="Number of topics (capped at 100)"),
    _admin: Principal = Depends(require_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    result = await service.top_topics(limit)
    return SuccessResponse(data=result.to_data())


# ── Debug (admin) ─────────────────────────────────────────────────────────────


@router.get("/debug/{correlation_id}", response_model=SuccessResponse)
async def get_debug_records(
    correlation_id: str,
    _admin: Principal = Depends(require_admin),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """Everything the recorder captured while serving one request."""
    records = service.recorder.for_correlation(correlation_id)
    return SuccessResponse(
        data={"correlation_id": correlation_id, "records": [r.to_dict() for r in records]}
    )
