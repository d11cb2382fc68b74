"""
Cache Module

Typed key/value cache with TTLs and advisory locks.

Architecture:
- Cache / CacheFactory: typed views, JSON serialization via pydantic
- MemoryCacheBackend: in-process backend (single instance deployments, tests)
- RedisCacheBackend: shared backend with distributed locks
"""

from cache.cache import DEFAULT_TTL, Cache, CacheBackend, CacheFactory
from cache.memory_backend import MemoryCacheBackend
from cache.redis_backend import RedisCacheBackend

__all__ = [
    'DEFAULT_TTL',
    'Cache',
    'CacheBackend',
    'CacheFactory',
    'MemoryCacheBackend',
    'RedisCacheBackend',
]
