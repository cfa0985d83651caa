"""Key/value stores for computed analytics.

Entries are JSON objects produced by the cache manager::

    {"payload": {...}, "computed_at": "<iso>", "expires_at": "<iso>", "computed_ts": <float>}

Two backends share one interface:

- :class:`RedisCacheStore`: shared across workers; TTL enforced by Redis,
  conditional writes done atomically in a Lua script.
- :class:`MemoryCacheStore`: single process (development and tests); TTL
  enforced against an injectable clock.

Both only overwrite an entry when the incoming ``computed_ts`` is not older
than the stored one, so a slow recomputation cannot clobber a newer result.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import redis.asyncio as aioredis

from exam_analytics.config import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Interface shared by the cache backends."""

    async def get(self, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def set_if_newer(self, key: str, entry: dict[str, Any], ttl_seconds: float) -> bool:
        """Store ``entry`` unless a newer one is already there. Returns True if written."""
        raise NotImplementedError

    async def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ── In-process store ──────────────────────────────────────────────────────────


class MemoryCacheStore(CacheStore):
    def __init__(self, clock: Clock | None = None):
        self._clock = clock or _utcnow
        self._data: dict[str, tuple[dict[str, Any], datetime]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def _live(self, key: str) -> dict[str, Any] | None:
        item = self._data.get(key)
        if item is None:
            return None
        entry, expires_at = item
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> dict[str, Any] | None:
        return self._live(key)

    async def set_if_newer(self, key: str, entry: dict[str, Any], ttl_seconds: float) -> bool:
        current = self._live(key)
        if current is not None and current.get("computed_ts", 0) > entry["computed_ts"]:
            return False
        self._data[key] = (entry, self._clock() + timedelta(seconds=ttl_seconds))
        return True

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._data if k.startswith(prefix)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    async def close(self) -> None:
        self._data.clear()


# ── Redis store ───────────────────────────────────────────────────────────────

# KEYS[1] = cache key
# ARGV[1] = serialised entry
# ARGV[2] = entry computed_ts (float seconds)
# ARGV[3] = ttl in milliseconds
# Returns 1 if written, 0 if a newer entry is already stored.
_SET_IF_NEWER = """
local current = redis.call('GET', KEYS[1])
if current then
    local ok, decoded = pcall(cjson.decode, current)
    if ok and type(decoded) == 'table' then
        local stored_ts = tonumber(decoded['computed_ts'])
        if stored_ts and stored_ts > tonumber(ARGV[2]) then
            return 0
        end
    end
end
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[3])
return 1
"""


class RedisCacheStore(CacheStore):
    def __init__(self, url: str, max_connections: int = 10):
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            decode_responses=True,
            max_connections=max_connections,
        )
        self._client = aioredis.Redis(connection_pool=self._pool)
        self._set_if_newer = self._client.register_script(_SET_IF_NEWER)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._client.get(key)
        return json.loads(raw) if raw else None

    async def set_if_newer(self, key: str, entry: dict[str, Any], ttl_seconds: float) -> bool:
        written = await self._set_if_newer(
            keys=[key],
            args=[
                json.dumps(entry, default=str),
                entry["computed_ts"],
                max(1, int(ttl_seconds * 1000)),
            ],
        )
        return bool(written)

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self._client.scan_iter(match=f"{prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await self._client.delete(*batch)
                batch = []
        if batch:
            deleted += await self._client.delete(*batch)
        return deleted

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()
        await self._pool.disconnect()


def build_cache_store(settings: Settings, clock: Clock | None = None) -> CacheStore:
    """Create the configured backend."""
    backend = settings.CACHE_BACKEND.lower()
    if backend == "redis":
        logger.info("Analytics cache: redis (%s)", settings.REDIS_URL)
        return RedisCacheStore(settings.REDIS_URL)
    if backend == "memory":
        logger.info("Analytics cache: in-process memory")
        return MemoryCacheStore(clock)
    raise ValueError(f"Unknown CACHE_BACKEND: {settings.CACHE_BACKEND!r}")
