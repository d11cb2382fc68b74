"""
Clair v1 API client.

Only the two calls the scan orchestrator needs: submit a layer for analysis
and read a layer's analysis back. Error responses are raised as
ScanBackendError carrying the HTTP status and body.
"""

import logging
from urllib.parse import quote

import aiohttp

from registry.errors import ScanBackendError
from scanning.models import ClairLayerEnvelope, ClairLayerRequest

logger = logging.getLogger(__name__)


class ClairApi:
    """
    Args:
        base_url: Clair API root (e.g. "http://clair:6060")
        timeout: Seconds allowed per call
    """

    def __init__(self, base_url: str, timeout: float = 60):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def submit_layer(self, request: ClairLayerRequest) -> None:
        """
        POST /v1/layers

        Raises:
            ScanBackendError: 422 when Clair could not analyze the layer, other statuses on failure
            asyncio.TimeoutError: If Clair does not answer within the timeout
        """
        body = request.model_dump(by_alias=True, exclude_none=True)
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.base_url}/v1/layers",
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status not in (200, 201):
                    raise ScanBackendError(response.status, await response.text())
        logger.debug(f"Submitted layer {request.layer.name[:19]} to Clair")

    async def get_layer_result(self, name: str, features: bool = True, vulnerabilities: bool = True) -> ClairLayerEnvelope:
        """
        GET /v1/layers/<name>

        Raises:
            ScanBackendError: 404 when the layer was never analyzed
        """
        flags = [flag for flag, enabled in (("features", features), ("vulnerabilities", vulnerabilities)) if enabled]
        url = f"{self.base_url}/v1/layers/{quote(name, safe=':')}"
        if flags:
            url = f"{url}?{'&'.join(flags)}"

        async with aiohttp.ClientSession() as session:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                text = await response.text()
                if response.status != 200:
                    raise ScanBackendError(response.status, text)
        return ClairLayerEnvelope.model_validate_json(text)
