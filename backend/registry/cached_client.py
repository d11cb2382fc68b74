"""
Cached Registry Client

Decorator over a Local or Remote client. Reads check a namespaced cache key
first and fall back to the wrapped client; everything content-addressed is
stored without expiry, mutable listings with a short TTL.
"""

import logging
from typing import BinaryIO, Callable, List, Optional

from cache.cache import CacheFactory
from registry.client import RegistryClient
from registry.errors import NotFoundError
from registry.layout import is_digest
from registry.models import (
    Image,
    ImageConfig,
    ImageSet,
    Layer,
    LayerIndex,
    LayerProxyInfo,
    Permissions,
    Repository,
)

logger = logging.getLogger(__name__)


class CachedRegistryClient(RegistryClient):
    """
    Caching decorator for a registry client.

    The wrapped client is built by `build_inner`, which receives this instance
    so that the inner client's chained lookups come back through the cache.

    Args:
        build_inner: Callable taking the recurse reference and returning the client to wrap
        cache_factory: Source of typed caches
        namespace: Prefix separating mutable listings of different registries/users
        listing_ttl: Seconds to keep repository, tag and tag pointer listings
        index_ttl: Seconds to keep layer indexes
    """

    def __init__(
        self,
        build_inner: Callable[[RegistryClient], RegistryClient],
        cache_factory: CacheFactory,
        namespace: str = "",
        listing_ttl: Optional[float] = 60,
        index_ttl: Optional[float] = 3600,
    ):
        inner = build_inner(self)
        if isinstance(inner, CachedRegistryClient):
            raise TypeError("A cached registry client cannot wrap another cached registry client")
        self.inner = inner
        self.namespace = namespace

        self._image_sets = cache_factory.get(ImageSet, ttl=None)
        self._configs = cache_factory.get(ImageConfig, ttl=None)
        self._repositories = cache_factory.get(List[Repository], ttl=listing_ttl)
        self._tags = cache_factory.get(List[str], ttl=listing_ttl)
        self._tag_digests = cache_factory.get(str, ttl=listing_ttl)
        self._indexes = cache_factory.get(List[LayerIndex], ttl=index_ttl)

    def _volatile(self, *parts: str) -> str:
        return ":".join(["volatile", self.namespace, *parts])

    # ==================== Cached reads ====================

    async def resolve_image_set(self, repository: str, reference: str) -> ImageSet:
        digest = reference if is_digest(reference) else await self.get_tag_digest(repository, reference)
        key = f"static:imageset:{digest}"

        image_set, found = await self._image_sets.try_get(key)
        if found:
            return image_set

        image_set = await self.inner.resolve_image_set(repository, digest)
        await self._image_sets.set(key, image_set)
        return image_set

    async def get_tag_digest(self, repository: str, tag: str) -> str:
        key = self._volatile("tag", repository, tag)
        digest, found = await self._tag_digests.try_get(key)
        if found:
            return digest

        digest = await self.inner.get_tag_digest(repository, tag)
        await self._tag_digests.set(key, digest)
        return digest

    async def get_image_config(self, repository: str, digest: str) -> ImageConfig:
        key = f"static:config:{digest}"
        config, found = await self._configs.try_get(key)
        if found:
            return config

        config = await self.inner.get_image_config(repository, digest)
        await self._configs.set(key, config)
        return config

    async def list_repositories(self) -> List[Repository]:
        key = self._volatile("repositories")
        repositories, found = await self._repositories.try_get(key)
        if found:
            return repositories

        repositories = await self.inner.list_repositories()
        await self._repositories.set(key, repositories)
        return repositories

    async def list_tags(self, repository: str) -> List[str]:
        key = self._volatile("tags", repository)
        tags, found = await self._tags.try_get(key)
        if found:
            return tags

        tags = await self.inner.list_tags(repository)
        await self._tags.set(key, tags)
        return tags

    async def get_indexes(self, repository: str, image: Image) -> List[LayerIndex]:
        key = f"volatile:indexes:{image.digest}"
        indexes, found = await self._indexes.try_get(key)
        if found:
            return indexes

        indexes = await self.inner.get_indexes(repository, image)
        await self._indexes.set(key, indexes)
        return indexes

    # ==================== Pass-through ====================

    async def get_manifest(self, repository: str, digest: str) -> dict:
        return await self.inner.get_manifest(repository, digest)

    async def get_blob(self, repository: str, digest: str) -> BinaryIO:
        return await self.inner.get_blob(repository, digest)

    async def get_layer_archive(self, repository: str, digest: str) -> BinaryIO:
        return await self.inner.get_layer_archive(repository, digest)

    async def get_layer(self, repository: str, digest: str) -> Layer:
        return await self.inner.get_layer(repository, digest)

    async def get_file(self, repository: str, layer: Layer, path: str) -> BinaryIO:
        return await self.inner.get_file(repository, layer, path)

    async def get_permissions(self, repository: str) -> Permissions:
        return await self.inner.get_permissions(repository)

    async def get_layer_proxy_info(self, repository: str, layer: Layer) -> LayerProxyInfo:
        return await self.inner.get_layer_proxy_info(repository, layer)

    # ==================== Deletes ====================

    async def _live_tags(self, repository: str) -> List[str]:
        """Tags as the wrapped client sees them, read before a delete changes them"""
        try:
            return await self.inner.list_tags(repository)
        except NotFoundError:
            return []

    async def _invalidate(self, repository: str, tags: List[str]):
        cached, _ = await self._tags.try_get(self._volatile("tags", repository))
        pointers = set(tags) | set(cached or [])
        for tag in pointers:
            await self._tag_digests.delete(self._volatile("tag", repository, tag))
        await self._tags.delete(self._volatile("tags", repository))
        await self._repositories.delete(self._volatile("repositories"))
        logger.debug(f"Invalidated cached listings of {repository} ({len(pointers)} tag pointers)")

    async def delete_image(self, repository: str, digest: str) -> None:
        tags = await self._live_tags(repository)
        try:
            await self.inner.delete_image(repository, digest)
        finally:
            await self._invalidate(repository, tags)

    async def delete_repository(self, repository: str) -> None:
        tags = await self._live_tags(repository)
        try:
            await self.inner.delete_repository(repository)
        finally:
            await self._invalidate(repository, tags)
