"""
In-process cache backend.

Used when no Redis URL is configured and in tests. Entries expire on a
monotonic clock; locks are tokens with a deadline so an abandoned lock frees
itself after its hold timeout.
"""

import asyncio
import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional, Tuple

from cache.cache import CacheBackend
from registry.errors import LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.05


class MemoryCacheBackend(CacheBackend):
    """Thread-safe dict store with TTLs and expiring locks"""

    MAX_CACHE_SIZE = 10000  # Prevent unbounded growth

    def __init__(self):
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._locks: Dict[str, Tuple[str, float]] = {}
        self._mutex = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._entries[key]
            return None
        return value

    def _cleanup_expired(self, now: float):
        expired = [
            key for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")

    async def get(self, key: str) -> Optional[str]:
        with self._mutex:
            return self._live(key, time.monotonic())

    async def set(self, key: str, value: str, ttl: Optional[float]) -> None:
        now = time.monotonic()
        with self._mutex:
            if len(self._entries) >= self.MAX_CACHE_SIZE:
                self._cleanup_expired(now)
                if len(self._entries) >= self.MAX_CACHE_SIZE:
                    logger.warning("Memory cache exceeded limit, evicting oldest entry")
                    self._entries.pop(next(iter(self._entries)))
            self._entries[key] = (value, now + ttl if ttl is not None else None)

    async def exists(self, key: str) -> bool:
        with self._mutex:
            return self._live(key, time.monotonic()) is not None

    async def delete(self, key: str) -> None:
        with self._mutex:
            self._entries.pop(key, None)

    def _try_acquire(self, name: str, token: str, hold_timeout: float) -> bool:
        now = time.monotonic()
        with self._mutex:
            holder = self._locks.get(name)
            if holder is not None and now < holder[1]:
                return False
            if holder is not None:
                logger.warning(f"Lock {name} expired without being released, taking over")
            self._locks[name] = (token, now + hold_timeout)
            return True

    def _release(self, name: str, token: str):
        with self._mutex:
            holder = self._locks.get(name)
            # An expired lock may already belong to someone else
            if holder is not None and holder[0] == token:
                del self._locks[name]

    @asynccontextmanager
    async def lock(self, name: str, wait_timeout: float, hold_timeout: float):
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait_timeout

        while not self._try_acquire(name, token, hold_timeout):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeoutError(f"Timed out waiting for lock {name}")
            await asyncio.sleep(min(LOCK_POLL_INTERVAL, remaining))

        try:
            yield
        finally:
            self._release(name, token)
