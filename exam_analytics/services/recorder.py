"""Correlation / debug recorder.

A passive sink injected into the query executor, the aggregation layer and
the cache manager. Every record is tagged with the correlation id of the
request being served (held in a context variable, so it follows the request
into worker threads and single-flight tasks).

Recording must never break the request it describes: ``record`` swallows and
logs its own failures.
"""

import logging
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Return the current correlation id, generating one if the context has none."""
    value = _correlation_id.get()
    if value is None:
        value = new_correlation_id()
        _correlation_id.set(value)
    return value


def set_correlation_id(value: str | None) -> Token:
    return _correlation_id.set(value or new_correlation_id())


def reset_correlation_id(token: Token) -> None:
    _correlation_id.reset(token)


@dataclass(frozen=True)
class DebugRecord:
    correlation_id: str
    component: str
    event: str
    duration_ms: float | None
    detail: dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "component": self.component,
            "event": self.event,
            "duration_ms": self.duration_ms,
            "detail": self.detail,
            "recorded_at": self.recorded_at.isoformat(),
        }


class Recorder:
    """Bounded in-memory ring buffer of debug records, mirrored to logging."""

    def __init__(self, max_records: int = 5000):
        self._records: deque[DebugRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def record(
        self,
        component: str,
        event: str,
        duration_ms: float | None = None,
        **detail: Any,
    ) -> None:
        try:
            rec = DebugRecord(
                correlation_id=get_correlation_id(),
                component=component,
                event=event,
                duration_ms=round(duration_ms, 3) if duration_ms is not None else None,
                detail=detail,
            )
            with self._lock:
                self._records.append(rec)
            logger.debug(
                "[%s] %s.%s%s %s",
                rec.correlation_id,
                component,
                event,
                f" ({rec.duration_ms}ms)" if rec.duration_ms is not None else "",
                detail or "",
            )
        except Exception as e:
            logger.warning("Recorder failed to record %s.%s (non-fatal): %s", component, event, e)

    def anomaly(self, component: str, kind: str, **detail: Any) -> None:
        """Record a data-quality or security anomaly and log it at WARNING."""
        self.record(component, kind, anomaly=True, **detail)
        logger.warning("[%s] %s anomaly in %s: %s", get_correlation_id(), kind, component, detail)

    @contextmanager
    def timed(self, component: str, event: str, **detail: Any) -> Iterator[dict[str, Any]]:
        """Time the enclosed block and record it; the yielded dict can receive extra detail."""
        extra: dict[str, Any] = {}
        start = time.perf_counter()
        try:
            yield extra
        finally:
            self.record(
                component,
                event,
                (time.perf_counter() - start) * 1000,
                **{**detail, **extra},
            )

    def for_correlation(self, correlation_id: str) -> list[DebugRecord]:
        with self._lock:
            return [r for r in self._records if r.correlation_id == correlation_id]

    def events(self, component: str | None = None, event: str | None = None) -> list[DebugRecord]:
        with self._lock:
            return [
                r
                for r in self._records
                if (component is None or r.component == component)
                and (event is None or r.event == event)
            ]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
