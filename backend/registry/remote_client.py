"""
Remote Registry Client

Speaks the registry HTTP API v2 (Docker Hub, GHCR, Quay, self-hosted
registry:2, ...). Manifests and configs are fetched directly; layer archives
are downloaded once into an on-disk layer cache that uses the same layout as
registry storage, verified against their digest, and read from there.
"""

import hashlib
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from io import BytesIO
from typing import BinaryIO, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import aiohttp

from content.aufs_filter import AufsFilter
from content.layer_extractor import LayerExtractor
from registry.auth import RegistryAuthHandler
from registry.client import RegistryClient, RegistryClientBase, parse_manifest
from registry.errors import AuthenticationError, LayerArchiveError, NotFoundError, RegistryError
from registry.layout import RegistryLayout, compute_digest, validate_reference, validate_repository_name
from registry.models import MANIFEST_ACCEPT, Layer, LayerProxyInfo, Permissions, Repository
from utils.async_io import run_blocking

logger = logging.getLogger(__name__)

_LINK_NEXT_RE = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')
CATALOG_PAGE_SIZE = 100
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass
class HttpReply:
    """Status, lower-cased headers and body of one registry response"""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self):
        return parse_manifest(self.body) if self.body else {}


def pull_scope(repository: str) -> str:
    return f"repository:{repository}:pull"


def admin_scope(repository: str) -> str:
    return f"repository:{repository}:*"


class RemoteRegistryClient(RegistryClientBase):
    """
    Registry client over the HTTP API v2.

    Args:
        endpoint: Registry API base URL (e.g. "https://registry-1.docker.io/v2")
        layer_cache_dir: Directory holding downloaded layer archives
        auth: Authorization handler; anonymous if omitted
        timeout: Seconds allowed for API requests
        download_timeout: Seconds allowed for one layer download
        extractor: Layer archive reader
        aufs_filter: Whiteout filter
        recurse: Client used for chained lookups; defaults to this instance
    """

    def __init__(
        self,
        endpoint: str,
        layer_cache_dir: str,
        auth: Optional[RegistryAuthHandler] = None,
        timeout: float = 30,
        download_timeout: float = 600,
        extractor: Optional[LayerExtractor] = None,
        aufs_filter: Optional[AufsFilter] = None,
        recurse: Optional[RegistryClient] = None,
    ):
        super().__init__(extractor=extractor, aufs_filter=aufs_filter, recurse=recurse)
        self.endpoint = endpoint.rstrip("/")
        self.host = urlparse(self.endpoint).netloc
        self.auth = auth or RegistryAuthHandler(self.endpoint)
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.layer_cache = RegistryLayout(layer_cache_dir)

    def _url(self, repository: str, *parts: str) -> str:
        validate_repository_name(repository)
        return "/".join([self.endpoint, repository, *parts])

    # ==================== Transport ====================

    async def _http(self, method: str, url: str, headers: Dict[str, str]) -> HttpReply:
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                body = await response.read()
                return HttpReply(
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    body=body,
                )

    async def _send(self, method: str, url: str, scope: str, headers: Optional[Dict[str, str]] = None) -> HttpReply:
        """
        Send an authorized request, renewing the token once on 401.

        Raises:
            AuthenticationError: If the registry still answers 401
        """
        request_headers = dict(headers or {})
        for attempt in range(2):
            authorization = await self.auth.authorize(scope)
            if authorization:
                request_headers["Authorization"] = authorization
            reply = await self._http(method, url, request_headers)
            if reply.status != 401:
                return reply
            logger.debug(f"Registry answered 401 for {url} (attempt {attempt + 1})")
            self.auth.invalidate(scope)

        self.auth.reject()
        raise AuthenticationError(f"Registry {self.host} rejected the credentials for {scope}")

    @staticmethod
    def _check(reply: HttpReply, what: str):
        if reply.status == 404:
            raise NotFoundError(f"{what} not found")
        if reply.status >= 400:
            raise RegistryError(f"Registry returned {reply.status} for {what}: {reply.body[:200]!r}")

    async def _fetch_to_file(self, url: str, scope: str, dest: str) -> str:
        """
        Stream a blob into dest.

        Returns:
            sha256 digest of the written bytes
        """
        headers = {}
        authorization = await self.auth.authorize(scope)
        if authorization:
            headers["Authorization"] = authorization

        h = hashlib.sha256()
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.download_timeout)
            ) as response:
                if response.status == 401:
                    self.auth.invalidate(scope)
                    raise AuthenticationError(f"Registry {self.host} rejected the credentials for {scope}")
                if response.status == 404:
                    raise NotFoundError(f"Blob {url} not found")
                if response.status != 200:
                    raise RegistryError(f"Registry returned {response.status} downloading {url}")

                with open(dest, "wb") as fh:
                    async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
                        h.update(chunk)

        return f"sha256:{h.hexdigest()}"

    async def _ensure_layer(self, repository: str, digest: str) -> str:
        """Download a layer archive into the layer cache unless already present"""
        path = self.layer_cache.blob_path(digest)
        if os.path.isfile(path):
            return path

        os.makedirs(os.path.dirname(path), exist_ok=True)
        partial_path = f"{path}.{uuid.uuid4().hex}.part"
        try:
            actual = await self._fetch_to_file(self._url(repository, "blobs", digest), pull_scope(repository), partial_path)
            if digest.startswith("sha256:") and actual != digest:
                raise LayerArchiveError(f"Layer {digest} failed verification (downloaded {actual})")
            os.replace(partial_path, path)
        finally:
            if os.path.exists(partial_path):
                os.remove(partial_path)

        logger.info(f"Cached layer {digest[:19]} of {repository} ({os.path.getsize(path)} bytes)")
        return path

    # ==================== Registry operations ====================

    async def get_tag_digest(self, repository: str, tag: str) -> str:
        validate_reference(tag)
        reply = await self._send("GET", self._url(repository, "manifests", tag), pull_scope(repository), {"Accept": MANIFEST_ACCEPT})
        self._check(reply, f"Tag {repository}:{tag}")
        # Docker-Content-Digest is optional; the manifest bytes hash to the same value
        return reply.headers.get("docker-content-digest") or compute_digest(reply.body)

    async def get_manifest(self, repository: str, digest: str) -> dict:
        reply = await self._send("GET", self._url(repository, "manifests", digest), pull_scope(repository), {"Accept": MANIFEST_ACCEPT})
        self._check(reply, f"Manifest {digest}")
        if digest.startswith("sha256:") and compute_digest(reply.body) != digest:
            logger.warning(f"Manifest {digest} of {repository} does not match its digest")
        return parse_manifest(reply.body)

    async def get_blob(self, repository: str, digest: str) -> BinaryIO:
        reply = await self._send("GET", self._url(repository, "blobs", digest), pull_scope(repository))
        self._check(reply, f"Blob {digest}")
        return BytesIO(reply.body)

    async def get_layer_archive(self, repository: str, digest: str) -> BinaryIO:
        path = await self._ensure_layer(repository, digest)
        return open(path, "rb")

    async def get_layer(self, repository: str, digest: str) -> Layer:
        reply = await self._send("HEAD", self._url(repository, "blobs", digest), pull_scope(repository))
        self._check(reply, f"Layer {digest}")
        return Layer(digest=digest, size=int(reply.headers.get("content-length", 0)))

    async def get_file(self, repository: str, layer: Layer, path: str) -> BinaryIO:
        archive = await self._ensure_layer(repository, layer.digest)
        return await run_blocking(self.extractor.extract_file, archive, path)

    async def _catalog(self) -> List[str]:
        names = []
        url = f"{self.endpoint}/_catalog?n={CATALOG_PAGE_SIZE}"
        while url:
            reply = await self._send("GET", url, "registry:catalog:*")
            self._check(reply, "Catalog")
            names.extend(reply.json().get("repositories") or [])

            match = _LINK_NEXT_RE.search(reply.headers.get("link", ""))
            url = urljoin(self.endpoint, match.group(1)) if match else None
        return names

    async def list_repositories(self) -> List[Repository]:
        repositories = []
        for name in await self._catalog():
            try:
                tags = await self.list_tags(name)
            except NotFoundError:
                # Catalogs can list repositories whose last tag was deleted
                continue
            if not tags:
                continue
            repositories.append(Repository(
                name=name,
                tags=len(tags),
                permissions=await self.get_permissions(name),
            ))
        return repositories

    async def list_tags(self, repository: str) -> List[str]:
        reply = await self._send("GET", self._url(repository, "tags", "list"), pull_scope(repository))
        self._check(reply, f"Repository {repository}")
        return sorted(reply.json().get("tags") or [])

    async def get_permissions(self, repository: str) -> Permissions:
        return await self.auth.get_permissions(repository)

    async def delete_image(self, repository: str, digest: str) -> None:
        reply = await self._send("DELETE", self._url(repository, "manifests", digest), admin_scope(repository))
        if reply.status == 405:
            raise RegistryError(f"Registry {self.host} does not allow deletes")
        self._check(reply, f"Manifest {digest}")
        logger.info(f"Deleted {repository}@{digest[:19]} from {self.host}")

    async def delete_repository(self, repository: str) -> None:
        """Delete every manifest referenced by a tag of the repository"""
        tags = await self.list_tags(repository)
        if not tags:
            raise NotFoundError(f"Repository {repository} has no tags")

        digests = []
        for tag in tags:
            digest = await self.get_tag_digest(repository, tag)
            if digest not in digests:
                digests.append(digest)

        for digest in digests:
            await self.delete_image(repository, digest)
        logger.info(f"Deleted repository {repository} ({len(digests)} manifests) from {self.host}")

    async def get_layer_proxy_info(self, repository: str, layer: Layer) -> LayerProxyInfo:
        return LayerProxyInfo(
            layer_url=self._url(repository, "blobs", layer.digest),
            layer_authorization=await self.auth.authorize(pull_scope(repository)),
        )
