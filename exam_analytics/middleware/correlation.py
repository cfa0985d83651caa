"""
Correlation id middleware
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from exam_analytics.services.recorder import (
    CORRELATION_HEADER,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach a correlation id to every request and echo it in the response.

    An incoming ``X-Correlation-ID`` header is reused; otherwise a new id is
    generated.
    """

    async def dispatch(self, request: Request, call_next):
        token = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        try:
            correlation_id = get_correlation_id()
            request.state.correlation_id = correlation_id
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            reset_correlation_id(token)
