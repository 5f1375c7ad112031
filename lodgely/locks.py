# Per-property critical sections for calendar writes.
# In-process an asyncio.Lock serializes coroutines; across processes a Redis SET NX PX lock
# gates the same section. Redis is fail-open so the service keeps working when it is down.
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Generic, Hashable, Tuple, TypeVar
from uuid import uuid4

from .errors import BusyError
from .redis_client import get_redis

logger = logging.getLogger("lodgely.locks")

K = TypeVar("K", bound=Hashable)

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


@asynccontextmanager
async def redis_try_lock(key: str, ttl_ms: int = 5000) -> AsyncIterator[bool]:
    """
    Best-effort distributed lock implemented with Redis SET NX PX.

    Yields True when the lock is acquired or Redis is unavailable (fail-open),
    False when another process holds it. Release is token-checked so we never
    delete a lock we do not own. Redis round-trips run on a worker thread.
    """
    # The first call connects and pings
    r = await asyncio.to_thread(get_redis)
    if r is None:
        yield True
        return

    token = uuid4().hex
    acquired = False
    try:
        acquired = bool(await asyncio.to_thread(r.set, key, token, nx=True, px=ttl_ms))
    except Exception as exc:
        logger.warning("redis_try_lock error (key=%s): %s", key, exc)
        yield True
        return

    try:
        yield acquired
    finally:
        if acquired:
            try:
                await asyncio.to_thread(r.eval, _RELEASE_SCRIPT, 1, key, token)
            except Exception as exc:
                # The lock will expire by TTL
                logger.debug("redis_try_lock release error (key=%s): %s", key, exc)


class KeyedLocks(Generic[K]):
    """
    One asyncio.Lock per key, created on demand.

    Entries are reference counted by holders and waiters and dropped once the last
    one leaves, so the table only holds keys that are currently contended.
    """

    def __init__(self) -> None:
        self._entries: Dict[K, Tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: K) -> AsyncIterator[None]:
        lock, users = self._entries.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._entries[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._entries[key]
            if users <= 1:
                del self._entries[key]
            else:
                self._entries[key] = (lock, users - 1)


class PropertyLocks:
    """Serializes calendar read-modify-write sections per property."""

    def __init__(self, ttl_ms: int = 5000) -> None:
        self._ttl_ms = ttl_ms
        self._locks: KeyedLocks[int] = KeyedLocks()

    @asynccontextmanager
    async def hold(self, property_id: int) -> AsyncIterator[None]:
        async with self._locks.hold(property_id):
            async with redis_try_lock(f"lock:booking:property:{property_id}", ttl_ms=self._ttl_ms) as locked:
                if not locked:
                    # Another process is working on this property's calendar
                    raise BusyError("Property calendar is busy, retry shortly", retry_after=1)
                yield
