"""Shared response envelopes."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SuccessResponse(BaseModel):
    """Standard success envelope."""

    success: bool = True
    data: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    error: ErrorBody
