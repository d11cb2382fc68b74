"""
Unit tests for registry authentication.

Tests verify:
- WWW-Authenticate parsing (Bearer and Basic)
- Token fetch per scope with caching
- Basic and anonymous fallbacks
- Rejected credentials are remembered
- Permission levels decoded from token access claims
"""

import base64
import json
from unittest.mock import AsyncMock

import pytest

from registry.auth import (
    RegistryAuthHandler,
    RegistryCredentials,
    decode_token_access,
    parse_www_authenticate,
    permissions_from_actions,
)
from registry.errors import AuthenticationError, RegistryError
from registry.models import Permissions

ENDPOINT = "https://ghcr.io/v2"
CHALLENGE = 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'


def _jwt(access):
    def part(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()
    return f"{part({'alg': 'none'})}.{part({'access': access})}.sig"


def _token_body(token, expires_in=300):
    return json.dumps({"token": token, "expires_in": expires_in}).encode()


@pytest.mark.unit
class TestParseWwwAuthenticate:

    def test_bearer(self):
        parsed = parse_www_authenticate(CHALLENGE)

        assert parsed == {
            "scheme": "bearer",
            "realm": "https://ghcr.io/token",
            "service": "ghcr.io",
            "scope": "repository:user/app:pull",
        }

    def test_basic(self):
        assert parse_www_authenticate('Basic realm="Registry Realm"')["scheme"] == "basic"

    def test_bearer_without_realm_is_rejected(self):
        assert parse_www_authenticate('Bearer service="x"') is None

    def test_unknown_scheme(self):
        assert parse_www_authenticate("Negotiate abc") is None
        assert parse_www_authenticate("") is None


@pytest.mark.unit
class TestTokenAccess:

    def test_decode_access_claim(self):
        token = _jwt([{"type": "repository", "name": "user/app", "actions": ["pull", "push"]}])

        assert decode_token_access(token) == {"user/app": {"pull", "push"}}

    def test_opaque_token(self):
        assert decode_token_access("opaque-token") is None

    @pytest.mark.parametrize("actions,expected", [
        ({"pull"}, Permissions.PULL),
        ({"pull", "push"}, Permissions.PUSH),
        ({"pull", "push", "delete"}, Permissions.ADMIN),
        ({"*"}, Permissions.ADMIN),
        (set(), Permissions.NONE),
    ])
    def test_permissions_from_actions(self, actions, expected):
        assert permissions_from_actions(actions) == expected


@pytest.mark.unit
class TestRegistryAuthHandler:

    @pytest.mark.asyncio
    async def test_bearer_token_fetched_and_cached_per_scope(self):
        handler = RegistryAuthHandler(ENDPOINT, RegistryCredentials("ghcr.io", "user", "secret"))
        handler._http_get = AsyncMock(side_effect=[
            (401, {"WWW-Authenticate": CHALLENGE}, b""),
            (200, {}, _token_body("tok1")),
        ])

        first = await handler.authorize("repository:user/app:pull")
        second = await handler.authorize("repository:user/app:pull")

        assert first == second == "Bearer tok1"
        assert handler._http_get.await_count == 2
        url = handler._http_get.call_args.args[0]
        kwargs = handler._http_get.call_args.kwargs
        assert url == "https://ghcr.io/token"
        assert kwargs["params"] == {"service": "ghcr.io", "scope": "repository:user/app:pull"}
        assert kwargs["headers"]["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_invalidate_forces_new_token(self):
        handler = RegistryAuthHandler(ENDPOINT)
        handler._http_get = AsyncMock(side_effect=[
            (401, {"WWW-Authenticate": CHALLENGE}, b""),
            (200, {}, _token_body("tok1")),
            (200, {}, _token_body("tok2")),
        ])

        await handler.authorize("repository:user/app:pull")
        handler.invalidate("repository:user/app:pull")

        assert await handler.authorize("repository:user/app:pull") == "Bearer tok2"

    @pytest.mark.asyncio
    async def test_open_registry_is_anonymous_admin(self):
        handler = RegistryAuthHandler("http://localhost:5000/v2")
        handler._http_get = AsyncMock(return_value=(200, {}, b"{}"))

        assert await handler.authorize("repository:app:pull") is None
        assert await handler.get_permissions("app") == Permissions.ADMIN

    @pytest.mark.asyncio
    async def test_basic_challenge_sends_credentials(self):
        handler = RegistryAuthHandler(ENDPOINT, RegistryCredentials("r", "user", "pw"))
        handler._http_get = AsyncMock(return_value=(401, {"WWW-Authenticate": 'Basic realm="r"'}, b""))

        authorization = await handler.authorize("repository:app:pull")

        assert authorization == "Basic " + base64.b64encode(b"user:pw").decode()

    @pytest.mark.asyncio
    async def test_rejected_credentials_are_remembered(self):
        handler = RegistryAuthHandler(ENDPOINT, RegistryCredentials("ghcr.io", "user", "wrong"))
        handler._http_get = AsyncMock(side_effect=[
            (401, {"WWW-Authenticate": CHALLENGE}, b""),
            (401, {}, b"denied"),
        ])

        with pytest.raises(AuthenticationError):
            await handler.login()
        with pytest.raises(AuthenticationError):
            await handler.authorize("repository:user/app:pull")

        assert handler._http_get.await_count == 2

    @pytest.mark.asyncio
    async def test_token_endpoint_error(self):
        handler = RegistryAuthHandler(ENDPOINT)
        handler._http_get = AsyncMock(side_effect=[
            (401, {"WWW-Authenticate": CHALLENGE}, b""),
            (500, {}, b"oops"),
        ])

        with pytest.raises(RegistryError):
            await handler.authorize("repository:user/app:pull")

    @pytest.mark.asyncio
    async def test_permissions_from_token(self):
        handler = RegistryAuthHandler(ENDPOINT)
        token = _jwt([{"type": "repository", "name": "user/app", "actions": ["pull"]}])
        handler._http_get = AsyncMock(side_effect=[
            (401, {"WWW-Authenticate": CHALLENGE}, b""),
            (200, {}, _token_body(token)),
        ])

        assert await handler.get_permissions("user/app") == Permissions.PULL

    @pytest.mark.asyncio
    async def test_opaque_token_means_pull(self):
        handler = RegistryAuthHandler(ENDPOINT)
        handler._http_get = AsyncMock(side_effect=[
            (401, {"WWW-Authenticate": CHALLENGE}, b""),
            (200, {}, json.dumps({"access_token": "opaque"}).encode()),
        ])

        assert await handler.get_permissions("user/app") == Permissions.PULL

    @pytest.mark.asyncio
    async def test_unexpected_discovery_status(self):
        handler = RegistryAuthHandler(ENDPOINT)
        handler._http_get = AsyncMock(return_value=(503, {}, b""))

        with pytest.raises(RegistryError):
            await handler.authorize("repository:app:pull")
