"""
Typed cache and lock primitive.

Backends store opaque JSON strings; Cache[T] owns serialization for one value
type through a pydantic TypeAdapter, so every namespace reads back exactly the
type it wrote.

Key namespaces:
    static:    content-addressed data, never stale (imagesets, configs, content)
    volatile:  mutable data (listings, tag pointers, scans, layer indexes)
    lock:      advisory locks
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Generic, Optional, Tuple, Type, TypeVar, Union

from pydantic import TypeAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sentinel meaning "use the cache's default TTL"; None means "never expire"
DEFAULT_TTL = object()


class CacheBackend(ABC):
    """Storage and locking used by every Cache instance"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float]) -> None:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def lock(self, name: str, wait_timeout: float, hold_timeout: float):
        """
        Return an async context manager holding the named lock.

        Raises LockTimeoutError on entry if the lock stays contended for
        longer than wait_timeout. The lock expires after hold_timeout even
        if the holder never leaves the context.
        """

    async def close(self) -> None:
        pass


class Cache(Generic[T]):
    """Cache view bound to one value type"""

    def __init__(self, backend: CacheBackend, value_type: Type[T], default_ttl: Optional[float] = None):
        self.backend = backend
        self.value_type = value_type
        self.default_ttl = default_ttl
        self._adapter: TypeAdapter = TypeAdapter(value_type)

    async def try_get(self, key: str) -> Tuple[Optional[T], bool]:
        """
        Read a value.

        Returns:
            (value, True) on a hit, (None, False) on a miss or expired entry
        """
        raw = await self.backend.get(key)
        if raw is None:
            return None, False
        return self._adapter.validate_json(raw), True

    async def set(self, key: str, value: T, ttl: Union[float, None, object] = DEFAULT_TTL) -> None:
        if ttl is DEFAULT_TTL:
            ttl = self.default_ttl
        raw = self._adapter.dump_json(value).decode("utf-8")
        await self.backend.set(key, raw, ttl)

    async def exists(self, key: str) -> bool:
        return await self.backend.exists(key)

    async def delete(self, key: str) -> None:
        await self.backend.delete(key)

    @asynccontextmanager
    async def take_lock(self, name: str, wait_timeout: float, hold_timeout: float) -> AsyncIterator[None]:
        """
        Hold the advisory lock `name` for the duration of the block.

        Args:
            name: Lock name, usually keyed on a digest
            wait_timeout: Seconds to wait for a contended lock
            hold_timeout: Seconds after which the lock expires on its own
        """
        async with self.backend.lock(name, wait_timeout, hold_timeout):
            yield


class CacheFactory:
    """Hands out typed Cache views over a shared backend"""

    def __init__(self, backend: CacheBackend, default_ttl: Optional[float] = None):
        self.backend = backend
        self.default_ttl = default_ttl

    def get(self, value_type: Type[T], ttl: Union[float, None, object] = DEFAULT_TTL) -> Cache[T]:
        if ttl is DEFAULT_TTL:
            ttl = self.default_ttl
        return Cache(self.backend, value_type, ttl)

    async def close(self) -> None:
        await self.backend.close()
