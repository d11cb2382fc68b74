"""
Registry error taxonomy.

Every failure raised by the registry clients, the layer extractor, the cache
and the scan backend derives from RegistryError so that the HTTP boundary can
map them in one place.
"""

from typing import Optional


class RegistryError(Exception):
    """Base error for registry and content operations"""


class NotFoundError(RegistryError):
    """A tag, digest, manifest, config, blob or file does not exist"""


class ManifestFormatError(RegistryError):
    """A manifest declares a media type that cannot be turned into an image"""


class LayerArchiveError(RegistryError):
    """A layer archive is corrupt or truncated"""


class AuthenticationError(RegistryError):
    """The registry rejected the supplied credentials"""


class CacheUnavailableError(RegistryError):
    """The cache backend cannot be reached"""


class LockTimeoutError(RegistryError):
    """A cache lock could not be acquired within the wait timeout"""


class ScanBackendError(RegistryError):
    """
    Error response from the vulnerability scan backend.

    Carries the HTTP status and raw response body so callers can tell
    "not analyzed yet" (404) from "analysis failed" (422).
    """

    def __init__(self, status: int, content: Optional[str] = None):
        self.status = status
        self.content = content or ""
        super().__init__(f"Scan backend returned {status}: {self.content[:200]}")
