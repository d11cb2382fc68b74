"""
Registry Module

Uniform asynchronous access to container registries.

Architecture:
- client: RegistryClient interface and shared resolution/indexing logic
- local_client / remote_client: storage and HTTP API v2 variants
- cached_client: caching decorator over either variant
- client_factory: picks and wires the variant from configuration
- auth: token/basic authentication for remote registries
"""

from registry.errors import (
    AuthenticationError,
    CacheUnavailableError,
    LayerArchiveError,
    LockTimeoutError,
    ManifestFormatError,
    NotFoundError,
    RegistryError,
    ScanBackendError,
)

__all__ = [
    'AuthenticationError',
    'CacheUnavailableError',
    'LayerArchiveError',
    'LockTimeoutError',
    'ManifestFormatError',
    'NotFoundError',
    'RegistryError',
    'ScanBackendError',
]
