import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from app.domain.errors import ConflictError

logger = logging.getLogger("app.calendar_lock")


class CalendarLock(Protocol):
    def hold(self, master_id: str) -> "AsyncIterator[None]": ...

    async def close(self) -> None: ...


def _lock_key(master_id: str) -> str:
    return f"calendar-lock:{master_id}"


class InMemoryCalendarLock:
    """Per-master asyncio lock; only serializes writers inside one process."""

    def __init__(self, timeout_seconds: float = 10) -> None:
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _checkout(self, master_id: str) -> asyncio.Lock:
        lock = self._locks.get(master_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[master_id] = lock
        self._users[master_id] = self._users.get(master_id, 0) + 1
        return lock

    def _checkin(self, master_id: str) -> None:
        remaining = self._users.get(master_id, 0) - 1
        if remaining > 0:
            self._users[master_id] = remaining
            return
        # nobody holds or waits for this master any more
        self._users.pop(master_id, None)
        self._locks.pop(master_id, None)

    @asynccontextmanager
    async def hold(self, master_id: str) -> AsyncIterator[None]:
        lock = self._checkout(master_id)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                logger.warning("calendar_lock_timeout", extra={"extra": {"master_id": master_id}})
                raise ConflictError(
                    "Master calendar is busy, please retry", code="CALENDAR_BUSY"
                ) from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(master_id)

    async def close(self) -> None:
        self._locks.clear()
        self._users.clear()


class RedisCalendarLock:
    def __init__(
        self,
        redis_url: str,
        timeout_seconds: float = 10,
        redis_client: redis.Redis | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)

    @asynccontextmanager
    async def hold(self, master_id: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            _lock_key(master_id),
            timeout=self.timeout_seconds * 3,
            blocking_timeout=self.timeout_seconds,
        )
        try:
            acquired = await lock.acquire()
        except RedisError:
            acquired = None
        if acquired is None:
            # row lock in the transaction still serializes writers
            logger.warning("calendar_lock_unavailable", extra={"extra": {"master_id": master_id}})
            yield
            return
        if not acquired:
            logger.warning("calendar_lock_timeout", extra={"extra": {"master_id": master_id}})
            raise ConflictError("Master calendar is busy, please retry", code="CALENDAR_BUSY")
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError):
                logger.warning("calendar_lock_release_failed", extra={"extra": {"master_id": master_id}})

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("redis calendar lock close failed")


def create_calendar_lock(app_settings) -> CalendarLock:
    timeout = getattr(app_settings, "calendar_lock_timeout_seconds", 10)
    if getattr(app_settings, "redis_url", None):
        return RedisCalendarLock(app_settings.redis_url, timeout_seconds=timeout)
    return InMemoryCalendarLock(timeout_seconds=timeout)
