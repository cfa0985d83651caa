"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from exam_analytics.api import analytics_router, health_router
from exam_analytics.config import settings
from exam_analytics.core.errors import AnalyticsError, UpstreamFailure
from exam_analytics.db.session import dispose_engine, get_session_factory
from exam_analytics.middleware.correlation import CorrelationIdMiddleware
from exam_analytics.schemas.common import ErrorBody, ErrorResponse
from exam_analytics.services.analytics_service import AnalyticsService
from exam_analytics.services.cache_manager import CacheManager
from exam_analytics.services.cache_store import build_cache_store
from exam_analytics.services.query_executor import QueryExecutor
from exam_analytics.services.recorder import Recorder, get_correlation_id

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)


def build_analytics_service(session_factory=None, store=None, clock=None) -> AnalyticsService:
    """Wire recorder, executor, cache store and cache manager together."""
    recorder = Recorder(max_records=settings.RECORDER_MAX_RECORDS)
    executor = QueryExecutor(session_factory or get_session_factory(), recorder)
    cache = CacheManager(store or build_cache_store(settings, clock), recorder, clock=clock)
    return AnalyticsService(executor, cache, recorder)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Exam analytics engine starting…")
    app.state.analytics = build_analytics_service()
    yield
    await app.state.analytics.cache.close()
    dispose_engine()
    logger.info("✅ Exam analytics engine shut down")


app = FastAPI(
    title="Exam Analytics API",
    description="Analytics computation & caching engine for the exam platform",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)
app.add_middleware(CorrelationIdMiddleware)

# ── Error envelopes ────────────────────────────────────────────────────────────


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or get_correlation_id()


def _error(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    details = dict(exc.details or {})
    if isinstance(exc, UpstreamFailure):
        details["correlation_id"] = _correlation_id(request)
        logger.error("Upstream failure [%s]: %s", details["correlation_id"], exc.message)
    return _error(exc.status_code, exc.code, exc.message, details or None)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _error(422, "VALIDATION_ERROR", "Request validation failed", {"errors": exc.errors()})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    correlation_id = _correlation_id(request)
    logger.error("Unhandled exception [%s]: %s", correlation_id, exc, exc_info=True)
    return _error(500, "INTERNAL_ERROR", "Internal server error", {"correlation_id": correlation_id})


# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(health_router, tags=["Health"])
app.include_router(analytics_router, prefix=f"{settings.API_PREFIX}/analytics", tags=["Analytics"])


@app.get("/")
async def root():
    return {
        "name": "Exam Analytics API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
