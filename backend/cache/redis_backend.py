"""
Redis cache backend.

Shared between processes, so the scan lock is a real distributed lock. Any
connection failure is raised as CacheUnavailableError: single-flight
guarantees depend on the lock, so an unreachable cache is never ignored.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockNotOwnedError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cache.cache import CacheBackend
from registry.errors import CacheUnavailableError, LockTimeoutError

logger = logging.getLogger(__name__)

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisCacheBackend(CacheBackend):
    """Cache backend over a Redis server"""

    LOCK_PREFIX = "lock:"

    def __init__(self, url: Optional[str] = None, client=None):
        if client is None:
            if not url:
                raise ValueError("Redis cache needs a url or a client")
            client = redis.from_url(url, decode_responses=True)
        self._client = client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except _UNAVAILABLE as e:
            raise CacheUnavailableError(f"Cannot access cache: {e}") from e

    async def set(self, key: str, value: str, ttl: Optional[float]) -> None:
        try:
            if ttl is None:
                await self._client.set(key, value)
            else:
                await self._client.set(key, value, px=max(1, int(ttl * 1000)))
        except _UNAVAILABLE as e:
            raise CacheUnavailableError(f"Cannot access cache: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except _UNAVAILABLE as e:
            raise CacheUnavailableError(f"Cannot access cache: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except _UNAVAILABLE as e:
            raise CacheUnavailableError(f"Cannot access cache: {e}") from e

    @asynccontextmanager
    async def lock(self, name: str, wait_timeout: float, hold_timeout: float):
        lock = self._client.lock(
            f"{self.LOCK_PREFIX}{name}",
            timeout=hold_timeout,
            blocking_timeout=wait_timeout,
        )
        try:
            acquired = await lock.acquire()
        except _UNAVAILABLE as e:
            raise CacheUnavailableError(f"Cannot access cache: {e}") from e
        if not acquired:
            raise LockTimeoutError(f"Timed out waiting for lock {name}")

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockNotOwnedError:
                logger.warning(f"Lock {name} expired before it was released")

    async def close(self) -> None:
        await self._client.aclose()
