"""
Registry client factory.

Wires the configured client variant: a Local client when registry storage is
mounted, otherwise a Cached client over a Remote client for the requested
registry host.
"""

import hashlib
import logging
from typing import Dict, Optional, Tuple

from cache.cache import CacheFactory
from content.layer_extractor import LayerExtractor
from registry.auth import RegistryAuthHandler, RegistryCredentials
from registry.cached_client import CachedRegistryClient
from registry.client import RegistryClient
from registry.local_client import LocalRegistryClient
from registry.remote_client import RemoteRegistryClient

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"
DOCKER_HUB_ALIASES = {"docker.io", "hub.docker.io", "registry.docker.io", DOCKER_HUB}


def de_alias_docker_hub(host: str) -> str:
    """Map every Docker Hub host alias to the API host"""
    host = (host or "").strip().lower()
    if not host or host in DOCKER_HUB_ALIASES:
        return DOCKER_HUB
    return host


def host_to_endpoint(host: str) -> str:
    """
    Build the API v2 base URL for a registry host.

    Examples:
        docker.io → https://registry-1.docker.io/v2
        localhost:5000 → http://localhost:5000/v2
        https://quay.io → https://quay.io/v2
    """
    host = host.strip().rstrip("/")
    if host.startswith(("http://", "https://")):
        base = host
    else:
        host = de_alias_docker_hub(host)
        # Registries on an explicit port are assumed to be plain-HTTP development registries
        scheme = "http://" if ":" in host else "https://"
        base = f"{scheme}{host}"

    if base.endswith("/v2"):
        return base
    return f"{base}/v2"


class ClientFactory:
    """
    Builds registry clients from configuration and caller credentials.

    Args:
        settings: AppConfig (or any object with the same attributes)
        cache_factory: Shared cache factory
        extractor: Layer archive reader shared by all clients
    """

    MAX_AUTH_HANDLERS = 200  # Prevent unbounded growth from distinct caller credentials

    def __init__(self, settings, cache_factory: CacheFactory, extractor: Optional[LayerExtractor] = None):
        self.settings = settings
        self.cache_factory = cache_factory
        self.extractor = extractor or LayerExtractor()
        self._auth_handlers: Dict[Tuple[str, Optional[str], str], RegistryAuthHandler] = {}

    @property
    def is_local(self) -> bool:
        return bool(self.settings.REGISTRY_ROOT)

    def default_credentials(self) -> RegistryCredentials:
        return RegistryCredentials(
            registry=self.settings.REGISTRY_HOST,
            username=self.settings.REGISTRY_USERNAME,
            password=self.settings.REGISTRY_PASSWORD,
        )

    def _cleanup_auth_handlers(self):
        """Drop rejected handlers and enforce the size limit, least recently used first"""
        keys_to_remove = [key for key, handler in self._auth_handlers.items() if handler.rejected]
        for key in keys_to_remove:
            del self._auth_handlers[key]

        if len(self._auth_handlers) >= self.MAX_AUTH_HANDLERS:
            oldest = list(self._auth_handlers)[:self.MAX_AUTH_HANDLERS // 10]
            for key in oldest:
                del self._auth_handlers[key]
            logger.warning(f"Auth handler cache exceeded limit, removed {len(oldest)} oldest entries")

    def _auth_handler(self, endpoint: str, credentials: RegistryCredentials) -> RegistryAuthHandler:
        # Token caches are reused across requests for the same identity. A
        # rejected handler stays with the clients that hold it; new clients
        # get a fresh one and try the credentials again.
        secret = hashlib.sha256((credentials.password or "").encode()).hexdigest()
        key = (endpoint, credentials.username, secret)
        handler = self._auth_handlers.pop(key, None)
        if handler is None or handler.rejected:
            if len(self._auth_handlers) >= self.MAX_AUTH_HANDLERS:
                self._cleanup_auth_handlers()
            handler = RegistryAuthHandler(endpoint, credentials, timeout=self.settings.REGISTRY_TIMEOUT)
        self._auth_handlers[key] = handler
        return handler

    def get_client(self, credentials: Optional[RegistryCredentials] = None) -> RegistryClient:
        """
        Return a registry client for the given credentials.

        Args:
            credentials: Caller identity; the configured default when omitted

        Returns:
            LocalRegistryClient in local mode, otherwise CachedRegistryClient over RemoteRegistryClient
        """
        if self.is_local:
            return LocalRegistryClient(
                self.settings.REGISTRY_ROOT,
                layer_proxy_url=self.settings.LAYER_PROXY_URL,
                extractor=self.extractor,
            )

        credentials = credentials or self.default_credentials()
        host = de_alias_docker_hub(credentials.registry)
        endpoint = host_to_endpoint(host)
        auth = self._auth_handler(endpoint, credentials)

        def build_remote(recurse: RegistryClient) -> RegistryClient:
            return RemoteRegistryClient(
                endpoint,
                self.settings.LAYER_CACHE_DIR,
                auth=auth,
                timeout=self.settings.REGISTRY_TIMEOUT,
                download_timeout=self.settings.DOWNLOAD_TIMEOUT,
                extractor=self.extractor,
                recurse=recurse,
            )

        logger.debug(f"Building registry client for {endpoint} as {credentials.username or 'anonymous'}")
        return CachedRegistryClient(
            build_remote,
            self.cache_factory,
            namespace=f"{host}:{credentials.username or 'anonymous'}",
            listing_ttl=self.settings.LISTING_CACHE_TTL,
            index_ttl=self.settings.INDEX_CACHE_TTL,
        )
