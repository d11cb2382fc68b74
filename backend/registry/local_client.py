"""
Local Registry Client

Reads a registry's filesystem storage directly. Used when LayerLens runs next
to the registry with its storage volume mounted.
"""

import logging
import os
import shutil
from typing import BinaryIO, List, Optional

from content.aufs_filter import AufsFilter
from content.layer_extractor import LayerExtractor
from registry.client import RegistryClient, RegistryClientBase, parse_manifest
from registry.errors import NotFoundError, RegistryError
from registry.layout import TAGS_FOLDER, RegistryLayout
from registry.models import Layer, LayerProxyInfo, Permissions, Repository
from utils.async_io import run_blocking

logger = logging.getLogger(__name__)


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _has_tags(directory: str) -> bool:
    tags_root = os.path.join(directory, TAGS_FOLDER)
    with os.scandir(tags_root) as entries:
        return any(entry.is_dir() for entry in entries)


def discover_repositories(path: str) -> List[str]:
    """
    Walk a repositories directory and return repository names.

    Directories starting with "_" are registry internals and skipped. A
    directory containing `_manifests/tags` is a repository (listed only if it
    has at least one tag); any other directory is a namespace holding further
    repositories.

    Returns:
        Repository names joined with "/" regardless of host path separator
    """
    repositories = []
    with os.scandir(path) as entries:
        directories = sorted((e for e in entries if e.is_dir()), key=lambda e: e.name)

    for entry in directories:
        if entry.name.startswith("_"):
            continue
        if os.path.isdir(os.path.join(entry.path, TAGS_FOLDER)):
            if _has_tags(entry.path):
                repositories.append(entry.name)
        else:
            repositories.extend(f"{entry.name}/{sub}" for sub in discover_repositories(entry.path))

    return repositories


class LocalRegistryClient(RegistryClientBase):
    """
    Registry client over on-disk registry storage.

    Args:
        registry_root: Directory containing `docker/registry/v2`
        layer_proxy_url: Base URL of the registry serving this storage
            (e.g. "https://registry.local/v2"); needed for scan submissions
        extractor: Layer archive reader
        aufs_filter: Whiteout filter
        recurse: Client used for chained lookups; defaults to this instance
    """

    def __init__(
        self,
        registry_root: str,
        layer_proxy_url: Optional[str] = None,
        extractor: Optional[LayerExtractor] = None,
        aufs_filter: Optional[AufsFilter] = None,
        recurse: Optional[RegistryClient] = None,
    ):
        super().__init__(extractor=extractor, aufs_filter=aufs_filter, recurse=recurse)
        self.layout = RegistryLayout(registry_root)
        self.layer_proxy_url = layer_proxy_url.rstrip("/") if layer_proxy_url else None

    async def get_tag_digest(self, repository: str, tag: str) -> str:
        link = self.layout.tag_link_path(repository, tag)
        try:
            return (await run_blocking(_read_text, link)).strip()
        except FileNotFoundError as e:
            raise NotFoundError(f"Tag {repository}:{tag} not found") from e

    async def get_manifest(self, repository: str, digest: str) -> dict:
        try:
            data = await run_blocking(_read_bytes, self.layout.blob_path(digest))
        except FileNotFoundError as e:
            raise NotFoundError(f"Manifest {digest} not found") from e
        return parse_manifest(data)

    async def get_blob(self, repository: str, digest: str) -> BinaryIO:
        try:
            return open(self.layout.blob_path(digest), "rb")
        except FileNotFoundError as e:
            raise NotFoundError(f"Blob {digest} not found") from e

    async def get_layer_archive(self, repository: str, digest: str) -> BinaryIO:
        return await self.get_blob(repository, digest)

    async def get_layer(self, repository: str, digest: str) -> Layer:
        try:
            size = os.path.getsize(self.layout.blob_path(digest))
        except FileNotFoundError as e:
            raise NotFoundError(f"Layer {digest} not found") from e
        return Layer(digest=digest, size=size)

    async def get_file(self, repository: str, layer: Layer, path: str) -> BinaryIO:
        return await run_blocking(self.extractor.extract_file, self.layout.blob_path(layer.digest), path)

    async def list_repositories(self) -> List[Repository]:
        root = self.layout.repositories_root
        if not os.path.isdir(root):
            logger.warning(f"Repositories root {root} does not exist")
            return []

        names = await run_blocking(discover_repositories, root)
        repositories = []
        for name in names:
            repositories.append(Repository(
                name=name,
                tags=len(await self.list_tags(name)),
                permissions=await self.get_permissions(name),
            ))
        return repositories

    async def list_tags(self, repository: str) -> List[str]:
        tags_root = self.layout.tags_path(repository)
        try:
            entries = await run_blocking(os.listdir, tags_root)
        except FileNotFoundError as e:
            raise NotFoundError(f"Repository {repository} not found") from e
        return sorted(t for t in entries if os.path.isdir(os.path.join(tags_root, t)))

    async def get_permissions(self, repository: str) -> Permissions:
        # Direct storage access carries no per-repository authorization
        return Permissions.ADMIN

    async def delete_image(self, repository: str, digest: str) -> None:
        """Remove every tag of the repository that points at digest"""
        removed = 0
        for tag in await self.list_tags(repository):
            if await self.get_tag_digest(repository, tag) == digest:
                await run_blocking(shutil.rmtree, self.layout.tag_path(repository, tag))
                removed += 1

        if removed == 0:
            raise NotFoundError(f"No tag of {repository} references {digest}")
        logger.info(f"Deleted {removed} tag(s) of {repository} referencing {digest[:19]}")

    async def delete_repository(self, repository: str) -> None:
        path = self.layout.repo_path(repository)
        if not os.path.isdir(path):
            raise NotFoundError(f"Repository {repository} not found")
        await run_blocking(shutil.rmtree, path)
        logger.info(f"Deleted repository {repository}")

    async def get_layer_proxy_info(self, repository: str, layer: Layer) -> LayerProxyInfo:
        if not self.layer_proxy_url:
            raise RegistryError("No layer proxy URL configured for local registry storage")
        return LayerProxyInfo(layer_url=f"{self.layer_proxy_url}/{repository}/blobs/{layer.digest}")
