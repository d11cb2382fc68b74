"""
Unit tests for the Clair v1 API client (aiohttp session mocked).
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from registry.errors import ScanBackendError
from scanning.clair_api import ClairApi
from scanning.models import ClairLayerRequest, ClairLayerSubmission

LAYER = "sha256:" + "a" * 64


def _session(status, text=""):
    response = MagicMock(status=status)
    response.text = AsyncMock(return_value=text)
    request_cm = MagicMock()
    request_cm.__aenter__.return_value = response
    session = MagicMock()
    session.__aenter__.return_value = session
    session.post.return_value = request_cm
    session.get.return_value = request_cm
    return session


@pytest.mark.unit
class TestClairApi:

    @pytest.mark.asyncio
    async def test_submit_layer_body(self):
        session = _session(201)
        request = ClairLayerRequest(layer=ClairLayerSubmission(
            name=LAYER,
            path="https://registry/v2/app/blobs/" + LAYER,
            headers={"Authorization": "Bearer x"},
        ))

        with patch("scanning.clair_api.aiohttp.ClientSession", return_value=session):
            await ClairApi("http://clair:6060/").submit_layer(request)

        url = session.post.call_args.args[0]
        body = session.post.call_args.kwargs["json"]
        assert url == "http://clair:6060/v1/layers"
        assert body == {"Layer": {
            "Name": LAYER,
            "Path": "https://registry/v2/app/blobs/" + LAYER,
            "Format": "Docker",
            "Headers": {"Authorization": "Bearer x"},
        }}

    @pytest.mark.asyncio
    async def test_submit_422_carries_body(self):
        session = _session(422, '{"Error": {"Message": "could not find layer"}}')
        request = ClairLayerRequest(layer=ClairLayerSubmission(name=LAYER, path="u"))

        with patch("scanning.clair_api.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ScanBackendError) as exc:
                await ClairApi("http://clair:6060").submit_layer(request)

        assert exc.value.status == 422
        assert "could not find layer" in exc.value.content

    @pytest.mark.asyncio
    async def test_get_layer_result(self):
        session = _session(200, '{"Layer": {"Name": "%s", "Features": []}}' % LAYER)

        with patch("scanning.clair_api.aiohttp.ClientSession", return_value=session):
            envelope = await ClairApi("http://clair:6060").get_layer_result(LAYER)

        assert envelope.layer.name == LAYER
        assert session.get.call_args.args[0] == f"http://clair:6060/v1/layers/{LAYER}?features&vulnerabilities"

    @pytest.mark.asyncio
    async def test_get_layer_result_without_flags(self):
        session = _session(200, '{"Layer": {"Name": "x"}}')

        with patch("scanning.clair_api.aiohttp.ClientSession", return_value=session):
            await ClairApi("http://clair:6060").get_layer_result(LAYER, features=False, vulnerabilities=False)

        assert session.get.call_args.args[0] == f"http://clair:6060/v1/layers/{LAYER}"

    @pytest.mark.asyncio
    async def test_not_found(self):
        session = _session(404, '{"Error": {"Message": "the resource cannot be found"}}')

        with patch("scanning.clair_api.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ScanBackendError) as exc:
                await ClairApi("http://clair:6060").get_layer_result(LAYER)

        assert exc.value.status == 404
