"""Cache manager: freshness policy and single-flight recomputation.

Entry lifecycle per key::

    ABSENT → COMPUTING → FRESH → STALE (TTL expiry / invalidation) → COMPUTING → …

- **Single-flight**: in-flight computations live in a per-key registry of
  ``asyncio`` tasks. Concurrent callers for the same key await the same task;
  unrelated keys never wait on each other.
- **Cancellation**: callers await through ``asyncio.shield``, so a cancelled
  caller abandons only its own wait; the task still completes and fills the
  cache for everyone else.
- **Invalidation** is lazy: matching entries are dropped and in-flight tasks
  detached, the next read recomputes. Results of computations that started
  before an invalidation are returned to their waiters but never stored.
- **Last writer wins**: the store only accepts an entry whose ``computed_at``
  is not older than the stored one.
- A broken cache backend degrades to uncached computation; it never fails a
  request.
"""

import asyncio
import enum
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from exam_analytics.config import settings
from exam_analytics.core.errors import NotFound, ScopeNotFound
from exam_analytics.services.cache_store import CacheStore, Clock
from exam_analytics.services.recorder import Recorder

logger = logging.getLogger(__name__)

COMPONENT = "cache_manager"

Compute = Callable[[], Awaitable[BaseModel | dict[str, Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntryState(str, enum.Enum):
    ABSENT = "ABSENT"
    COMPUTING = "COMPUTING"
    FRESH = "FRESH"
    STALE = "STALE"


@dataclass(frozen=True)
class CachedResult:
    key: str
    payload: dict[str, Any]
    computed_at: datetime
    expires_at: datetime

    def to_data(self) -> dict[str, Any]:
        """Payload plus freshness metadata, as served to API callers."""
        return {
            **self.payload,
            "computed_at": self.computed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_entry(cls, key: str, entry: dict[str, Any]) -> "CachedResult":
        return cls(
            key=key,
            payload=entry["payload"],
            computed_at=datetime.fromisoformat(entry["computed_at"]),
            expires_at=datetime.fromisoformat(entry["expires_at"]),
        )


class CacheManager:
    def __init__(
        self,
        store: CacheStore,
        recorder: Recorder,
        clock: Clock | None = None,
        ttl_for: Callable[[str], int] | None = None,
        key_prefix: str | None = None,
        seen_limit: int | None = None,
    ):
        self._store = store
        self._recorder = recorder
        self._clock = clock or _utcnow
        self._ttl_for = ttl_for or settings.ttl_for
        self._prefix = key_prefix or settings.CACHE_KEY_PREFIX
        self._seen_limit = seen_limit or settings.CACHE_SEEN_KEYS_MAX
        self._inflight: dict[str, asyncio.Task] = {}
        self._running: dict[asyncio.Task, int] = {}  # every live computation → start generation
        self._generation = 0
        self._invalidated: dict[str, int] = {}  # key prefix → generation of last invalidation
        self._seen: OrderedDict[str, None] = OrderedDict()

    def now(self) -> datetime:
        return self._clock()

    # ── key scheme ───────────────────────────────────────────────────────

    def key(self, scope: str, scope_id: uuid.UUID | str | None, kind: str, **window: Any) -> str:
        """``<prefix>:<scope>:<scope id>:<kind>[:name=value…]``.

        ``window`` carries pagination / filter parameters; ``None`` values are
        left out so an absent filter and no filter share a key.
        """
        parts = [self._prefix, scope, str(scope_id) if scope_id is not None else "all", kind]
        parts.extend(f"{name}={value}" for name, value in sorted(window.items()) if value is not None)
        return ":".join(parts)

    def scope_prefix(self, scope: str, scope_id: uuid.UUID | str | None = None) -> str:
        return f"{self._prefix}:{scope}:{scope_id if scope_id is not None else 'all'}:"

    # ── read path ────────────────────────────────────────────────────────

    async def get_or_compute(self, key: str, scope: str, compute: Compute) -> CachedResult:
        task = self._inflight.get(key)
        if task is None:
            cached = await self._read(key)
            if cached is not None:
                self._recorder.record(COMPONENT, "hit", key=key)
                return cached
            self._recorder.record(COMPONENT, "miss", key=key)
            # Another caller may have started the computation while we were reading.
            task = self._inflight.get(key)

        if task is None:
            task = asyncio.create_task(self._compute(key, scope, compute, self._generation))
            self._inflight[key] = task
            self._running[task] = self._generation
            task.add_done_callback(lambda t, key=key: self._release(key, t))
        else:
            self._recorder.record(COMPONENT, "join_inflight", key=key)

        return await asyncio.shield(task)

    async def state(self, key: str) -> EntryState:
        if key in self._inflight:
            return EntryState.COMPUTING
        cached = await self._read(key)
        if cached is not None:
            return EntryState.FRESH
        return EntryState.STALE if key in self._seen else EntryState.ABSENT

    async def _read(self, key: str) -> CachedResult | None:
        try:
            entry = await self._store.get(key)
        except Exception as e:
            logger.warning("Analytics cache read failed (non-fatal): %s", e)
            self._recorder.record(COMPONENT, "store_error", op="get", key=key, error=str(e))
            return None
        if entry is None:
            return None
        cached = CachedResult.from_entry(key, entry)
        if self._clock() >= cached.expires_at:
            return None
        return cached

    # ── compute path ─────────────────────────────────────────────────────

    async def _compute(self, key: str, scope: str, compute: Compute, generation: int) -> CachedResult:
        computed_at = self._clock()
        with self._recorder.timed(COMPONENT, "compute", key=key) as extra:
            try:
                result = await compute()
            except ScopeNotFound as e:
                extra["outcome"] = "not_found"
                raise NotFound(f"{e.kind.capitalize()} not found", {"id": str(e.scope_id)}) from e

        payload = result.model_dump(mode="json") if isinstance(result, BaseModel) else result
        ttl = self._ttl_for(scope)
        cached = CachedResult(
            key=key,
            payload=payload,
            computed_at=computed_at,
            expires_at=computed_at + timedelta(seconds=ttl),
        )

        if self._invalidated_since(key, generation):
            self._recorder.record(COMPONENT, "discard_stale_result", key=key)
            return cached

        remaining = (cached.expires_at - self._clock()).total_seconds()
        if remaining <= 0:
            return cached
        entry = {
            "payload": payload,
            "computed_at": cached.computed_at.isoformat(),
            "expires_at": cached.expires_at.isoformat(),
            "computed_ts": cached.computed_at.timestamp(),
        }
        try:
            written = await self._store.set_if_newer(key, entry, remaining)
        except Exception as e:
            logger.warning("Analytics cache write failed (non-fatal): %s", e)
            self._recorder.record(COMPONENT, "store_error", op="set", key=key, error=str(e))
            return cached

        self._remember(key)
        self._recorder.record(COMPONENT, "store" if written else "skip_older", key=key, ttl=ttl)
        return cached

    def _remember(self, key: str) -> None:
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        self._running.pop(task, None)
        self._prune_invalidated()
        # Mark the exception as retrieved: every waiter may have been cancelled.
        if not task.cancelled():
            task.exception()

    def _invalidated_since(self, key: str, generation: int) -> bool:
        return any(
            gen > generation for prefix, gen in self._invalidated.items() if key.startswith(prefix)
        )

    def _prune_invalidated(self) -> None:
        """Forget invalidations no running computation started before."""
        if not self._running:
            self._invalidated.clear()
            return
        oldest = min(self._running.values())
        for prefix in [p for p, gen in self._invalidated.items() if gen <= oldest]:
            del self._invalidated[prefix]

    # ── invalidation ─────────────────────────────────────────────────────

    async def invalidate_prefix(self, prefix: str) -> int:
        self._generation += 1
        self._invalidated[prefix] = self._generation
        self._prune_invalidated()
        detached = [k for k in self._inflight if k.startswith(prefix)]
        for k in detached:
            del self._inflight[k]

        try:
            deleted = await self._store.delete_prefix(prefix)
        except Exception as e:
            logger.warning("Analytics cache invalidation failed for %s (non-fatal): %s", prefix, e)
            self._recorder.record(COMPONENT, "store_error", op="delete", prefix=prefix, error=str(e))
            deleted = 0

        self._recorder.record(
            COMPONENT, "invalidate", prefix=prefix, deleted=deleted, detached=len(detached)
        )
        return deleted

    async def ping(self) -> bool:
        try:
            return await self._store.ping()
        except Exception as e:
            logger.warning("Analytics cache ping failed: %s", e)
            self._recorder.record(COMPONENT, "store_error", op="ping", error=str(e))
            return False

    async def close(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        self._running.clear()
        self._invalidated.clear()
        await self._store.close()
