import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger("app.rate_limit")

KEY_PREFIX = "booking-rate-limit"


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


def booking_create_key(user_id: str) -> str:
    return f"bookings:create:{user_id}"


class InMemoryRateLimiter:
    """Sliding window per key, held in process memory.

    Only correct for a single instance; used when no Redis is configured.
    """

    def __init__(self, limit: int, window_seconds: int = 60, cleanup_minutes: int = 10) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.cleanup_minutes = cleanup_minutes
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_seen: Dict[str, float] = {}
        self._last_prune: float = 0.0

    async def allow(self, key: str) -> bool:
        now = time.time()
        self._maybe_prune(now)
        window_start = now - self.window_seconds
        hits = self._hits[key]
        while hits and hits[0] <= window_start:
            hits.popleft()
        self._last_seen[key] = now
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True

    async def reset(self) -> None:
        self._hits.clear()
        self._last_seen.clear()
        self._last_prune = 0.0

    async def close(self) -> None:
        return None

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < self.window_seconds:
            return
        expire_before = now - (self.cleanup_minutes * 60)
        for key in list(self._hits.keys()):
            if not self._hits[key] or self._last_seen.get(key, 0.0) < expire_before:
                self._hits.pop(key, None)
                self._last_seen.pop(key, None)
        self._last_prune = now


# Sorted set of hit timestamps per key; trimming, counting and adding happen
# in one script so concurrent instances cannot overshoot the limit.
SLIDING_WINDOW_LUA = r'''
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local ttl_seconds = tonumber(ARGV[3])

local time = redis.call('TIME')
local now_ms = (time[1] * 1000) + math.floor(time[2] / 1000)

redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now_ms - window_ms)
if redis.call('ZCARD', KEYS[1]) >= limit then
  return 0
end

local seq = redis.call('INCR', KEYS[2])
redis.call('ZADD', KEYS[1], now_ms, tostring(now_ms) .. ':' .. tostring(seq))
redis.call('EXPIRE', KEYS[1], ttl_seconds)
redis.call('EXPIRE', KEYS[2], ttl_seconds)
return 1
'''


class RedisRateLimiter:
    def __init__(
        self,
        redis_url: str,
        limit: int,
        window_seconds: int = 60,
        cleanup_minutes: int = 10,
        redis_client: redis.Redis | None = None,
    ) -> None:
        self.limit = limit
        self.window_ms = window_seconds * 1000
        self.ttl_seconds = max(window_seconds + 2, int(cleanup_minutes * 60))
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)
        self._script_sha: str | None = None

    async def allow(self, key: str) -> bool:
        try:
            return bool(await self._run_script(f"{KEY_PREFIX}:{key}", f"{KEY_PREFIX}:{key}:seq"))
        except RedisError:
            logger.warning("rate_limit_store_unavailable", extra={"extra": {"key": key}})
            return True

    async def reset(self) -> None:
        try:
            cursor = 0
            while True:
                cursor, keys = await self.redis.scan(cursor=cursor, match=f"{KEY_PREFIX}:*", count=100)
                if keys:
                    await self.redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError:
            logger.warning("rate_limit_reset_failed")

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("rate_limit_close_failed")

    async def _run_script(self, set_key: str, seq_key: str) -> int:
        args = (set_key, seq_key, self.limit, self.window_ms, self.ttl_seconds)
        if not self._script_sha:
            self._script_sha = await self.redis.script_load(SLIDING_WINDOW_LUA)
        try:
            return await self.redis.evalsha(self._script_sha, 2, *args)
        except ResponseError as exc:
            if "NOSCRIPT" not in str(exc):
                raise
            self._script_sha = await self.redis.script_load(SLIDING_WINDOW_LUA)
            return await self.redis.evalsha(self._script_sha, 2, *args)


def create_rate_limiter(app_settings) -> RateLimiter:
    limit = app_settings.booking_rate_limit_per_minute
    cleanup = app_settings.rate_limit_cleanup_minutes
    if getattr(app_settings, "redis_url", None):
        return RedisRateLimiter(app_settings.redis_url, limit, cleanup_minutes=cleanup)
    return InMemoryRateLimiter(limit, cleanup_minutes=cleanup)
