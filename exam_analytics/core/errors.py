"""Error taxonomy of the analytics engine.

Each error carries the machine-readable ``code`` and the HTTP status it maps
to; ``main.py`` renders them into the standard error envelope.
"""

from typing import Any


class AnalyticsError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "ANALYTICS_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(AnalyticsError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(AnalyticsError):
    code = "FORBIDDEN"
    status_code = 403


class Unauthorized(AnalyticsError):
    code = "UNAUTHORIZED"
    status_code = 401


class ValidationFailed(AnalyticsError):
    code = "VALIDATION_ERROR"
    status_code = 400


class UpstreamFailure(AnalyticsError):
    """The persistent store is unreachable or a query timed out."""

    code = "UPSTREAM_FAILURE"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        timeout: bool = False,
    ):
        super().__init__(message, details)
        self.timeout = timeout


class ScopeNotFound(Exception):
    """Raised by aggregation when the scope id (user / exam / attempt) never existed.

    Internal to the engine; the cache manager turns it into :class:`NotFound`.
    """

    def __init__(self, kind: str, scope_id: Any):
        super().__init__(f"{kind} {scope_id} not found")
        self.kind = kind
        self.scope_id = scope_id
