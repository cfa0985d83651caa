"""API route package: imports all routers for main.py."""

from exam_analytics.api.health import router as health_router  # noqa: F401
from exam_analytics.api.analytics import router as analytics_router  # noqa: F401
