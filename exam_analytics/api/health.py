"""Health check endpoint."""

from fastapi import APIRouter, Depends

from exam_analytics.api.deps import get_analytics_service
from exam_analytics.services.analytics_service import AnalyticsService

router = APIRouter()


@router.get("/health")
async def health(service: AnalyticsService = Depends(get_analytics_service)):
    # An unreachable cache degrades to uncached reads, so it never fails the check.
    cache_ok = await service.cache.ping()
    return {
        "status": "healthy",
        "service": "exam-analytics",
        "cache": "ok" if cache_ok else "unavailable",
    }
