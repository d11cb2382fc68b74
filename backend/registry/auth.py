"""
Registry Authentication

Implements the registry token flow:
1. Discover the challenge with an unauthenticated GET /v2/
2. Bearer challenge: fetch a token per scope from the realm, sending Basic
   credentials when configured
3. Basic challenge: send Basic credentials directly
4. No challenge: anonymous access

Tokens are cached per scope until shortly before they expire. Once the
registry rejects the credentials, the handler refuses every further attempt so
that a client instance never hammers a registry with bad credentials.
"""

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set, Tuple

import aiohttp

from registry.errors import AuthenticationError, RegistryError
from registry.models import Permissions

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(minutes=4)


@dataclass
class RegistryCredentials:
    """Registry host plus optional username/password"""
    registry: str
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.username


@dataclass
class TokenGrant:
    """Cached authorization for one scope"""
    authorization: str
    expires_at: datetime
    # repository name -> granted actions, decoded from the token when possible
    access: Optional[Dict[str, Set[str]]] = field(default=None)

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


def parse_www_authenticate(header: str) -> Optional[Dict[str, str]]:
    """
    Parse a WWW-Authenticate header into its scheme and parameters.

    Example:
        Input: 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'
        Output: {
            "scheme": "bearer",
            "realm": "https://ghcr.io/token",
            "service": "ghcr.io",
            "scope": "repository:user/app:pull"
        }
    """
    if not header:
        return None

    scheme, _, params_str = header.strip().partition(" ")
    scheme = scheme.lower()
    if scheme not in ("bearer", "basic"):
        logger.warning(f"Unexpected WWW-Authenticate scheme: {header[:20]}")
        return None

    params = {key: value for key, value in re.findall(r'(\w+)="([^"]*)"', params_str)}
    params["scheme"] = scheme

    if scheme == "bearer" and "realm" not in params:
        logger.warning("WWW-Authenticate missing 'realm' parameter")
        return None

    return params


def decode_token_access(token: str) -> Optional[Dict[str, Set[str]]]:
    """
    Read the `access` claim of a registry JWT without verifying it.

    Returns:
        Mapping of repository name to granted actions, or None for opaque tokens
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = parts[1] + "=" * (-len(parts[1]) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except ValueError:
        return None

    access: Dict[str, Set[str]] = {}
    for entry in claims.get("access") or []:
        if entry.get("type") == "repository":
            access.setdefault(entry.get("name", ""), set()).update(entry.get("actions") or [])
    return access


def permissions_from_actions(actions: Set[str]) -> Permissions:
    if "*" in actions or "delete" in actions:
        return Permissions.ADMIN
    if "push" in actions:
        return Permissions.PUSH
    if "pull" in actions:
        return Permissions.PULL
    return Permissions.NONE


class RegistryAuthHandler:
    """
    Authorization for one registry endpoint and one set of credentials.

    Args:
        endpoint: Registry API base URL ending in /v2
        credentials: Username/password, or None for anonymous access
        timeout: Seconds allowed for each auth request
    """

    MAX_TOKEN_CACHE_SIZE = 500  # Prevent unbounded growth of cached tokens

    def __init__(self, endpoint: str, credentials: Optional[RegistryCredentials] = None, timeout: float = 10):
        self.endpoint = endpoint.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self._grants: Dict[str, TokenGrant] = {}
        self._challenge: Optional[Dict[str, str]] = None
        self._challenge_discovered = False
        self._rejected = False
        self._lock = asyncio.Lock()

    @property
    def rejected(self) -> bool:
        return self._rejected

    def _encode_basic_auth(self) -> Optional[str]:
        if not self.credentials or self.credentials.is_anonymous:
            return None
        raw = f"{self.credentials.username}:{self.credentials.password or ''}"
        return f"Basic {base64.b64encode(raw.encode()).decode()}"

    async def _http_get(self, url: str, params: Optional[Dict] = None, headers: Optional[Dict] = None) -> Tuple[int, Dict[str, str], bytes]:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                return response.status, dict(response.headers), await response.read()

    async def _get_challenge(self) -> Optional[Dict[str, str]]:
        if self._challenge_discovered:
            return self._challenge

        status, headers, _ = await self._http_get(f"{self.endpoint}/")
        if status == 401:
            www_auth = headers.get("WWW-Authenticate") or headers.get("Www-Authenticate")
            self._challenge = parse_www_authenticate(www_auth or "")
            if self._challenge is None:
                logger.warning(f"Registry {self.endpoint} returned 401 without a usable challenge")
        elif status == 200:
            logger.debug(f"Registry {self.endpoint} allows anonymous access")
        else:
            raise RegistryError(f"Unexpected status {status} during auth discovery for {self.endpoint}")

        self._challenge_discovered = True
        return self._challenge

    def _cleanup_grants(self):
        expired = [scope for scope, grant in self._grants.items() if grant.expired]
        for scope in expired:
            del self._grants[scope]
        if len(self._grants) >= self.MAX_TOKEN_CACHE_SIZE:
            self._grants.clear()
            logger.warning("Token cache exceeded limit, cleared")

    async def _fetch_token(self, challenge: Dict[str, str], scope: str) -> TokenGrant:
        params = {}
        if challenge.get("service"):
            params["service"] = challenge["service"]
        params["scope"] = scope

        headers = {}
        basic = self._encode_basic_auth()
        if basic:
            headers["Authorization"] = basic

        realm = challenge["realm"]
        status, _, body = await self._http_get(realm, params=params, headers=headers)
        if status == 401:
            self._rejected = True
            raise AuthenticationError(f"Token endpoint {realm} rejected the credentials")
        if status != 200:
            raise RegistryError(f"Token request to {realm} failed with status {status}: {body[:200]!r}")

        data = json.loads(body)
        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryError(f"Token endpoint {realm} returned 200 but no token")

        ttl = DEFAULT_TOKEN_TTL
        if data.get("expires_in"):
            # Renew a little early so a token never expires mid-request
            ttl = timedelta(seconds=max(int(data["expires_in"]) - 10, 10))

        logger.debug(f"Obtained token for scope {scope} from {realm}")
        return TokenGrant(
            authorization=f"Bearer {token}",
            expires_at=datetime.now(timezone.utc) + ttl,
            access=decode_token_access(token),
        )

    async def _grant(self, scope: str) -> Optional[TokenGrant]:
        if self._rejected:
            raise AuthenticationError("Registry credentials were rejected")

        async with self._lock:
            cached = self._grants.get(scope)
            if cached is not None and not cached.expired:
                return cached

            challenge = await self._get_challenge()
            if challenge is None or challenge["scheme"] == "basic":
                return None

            if len(self._grants) >= self.MAX_TOKEN_CACHE_SIZE * 0.8:
                self._cleanup_grants()

            grant = await self._fetch_token(challenge, scope)
            self._grants[scope] = grant
            return grant

    async def authorize(self, scope: str) -> Optional[str]:
        """
        Authorization header value for a request in `scope`.

        Returns:
            "Bearer ..." or "Basic ..." header value, or None for anonymous access

        Raises:
            AuthenticationError: If the registry rejected the credentials
        """
        grant = await self._grant(scope)
        if grant is not None:
            return grant.authorization
        return self._encode_basic_auth()

    def invalidate(self, scope: str):
        """Drop a cached token after the registry refused it"""
        self._grants.pop(scope, None)

    def reject(self):
        """Mark the credentials as rejected for the lifetime of this handler"""
        self._rejected = True

    async def login(self):
        """
        Verify the credentials against the registry.

        Raises:
            AuthenticationError: If the registry rejects them
        """
        await self.authorize("registry:catalog:*")

    async def get_permissions(self, repository: str) -> Permissions:
        """Effective permission level on a repository"""
        grant = await self._grant(f"repository:{repository}:*")
        if grant is None:
            # Open or Basic-auth registries do not scope access per repository
            return Permissions.ADMIN
        if grant.access is None:
            return Permissions.PULL
        return permissions_from_actions(grant.access.get(repository, set()))
