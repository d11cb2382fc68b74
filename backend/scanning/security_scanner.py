"""
Security Scanner

Orchestrates vulnerability scans of images through Clair.

Clair analyzes layers, each one relative to its parent, so an image is
submitted as a chain from its base layer upwards and the analysis of the
topmost layer covers the whole image. Layers Clair already knows are skipped,
which makes rescans of images sharing a base cheap.

State per image digest lives in the cache under `volatile:scans:<digest>`:
absent (not scanned, or still running), Complete, or Failed.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from cache.cache import CacheFactory
from registry.errors import ScanBackendError
from registry.models import Image, Layer
from scanning.clair_api import ClairApi
from scanning.models import (
    ClairLayerRequest,
    ClairLayerSubmission,
    ScanResult,
    ScanStatus,
    to_scan_result,
)

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "At least one layer of the image could not be scanned."

# Outcomes of one layer in the scan walk
ANALYZED = "analyzed"    # Clair already had it
SUBMITTED = "submitted"
FAILED = "failed"        # soft failure (422 or timeout), walk continues


@dataclass(frozen=True)
class LayerSubmission:
    layer: Layer
    outcome: str
    error: Optional[str] = None


@dataclass(frozen=True)
class ScanWalk:
    """Accumulator folded over the layers of one image, base first"""
    parent: Optional[Layer] = None
    submitted: int = 0
    errors: Tuple[str, ...] = ()

    def record(self, submission: LayerSubmission) -> "ScanWalk":
        if submission.outcome == FAILED:
            # A failed layer is never used as a parent
            return replace(self, errors=self.errors + (submission.error or DEFAULT_FAILURE_MESSAGE,))
        return replace(
            self,
            parent=submission.layer,
            submitted=self.submitted + (1 if submission.outcome == SUBMITTED else 0),
        )

    @property
    def failed(self) -> bool:
        return bool(self.errors)


def scan_key(image: Image) -> str:
    return f"volatile:scans:{image.digest}"


def parse_clair_error(content: str) -> Optional[str]:
    """Extract Error.Message from a Clair error body"""
    try:
        return json.loads(content)["Error"]["Message"]
    except (ValueError, KeyError, TypeError):
        logger.error(f"Could not parse Clair error response '{content[:200]}'")
        return None


class SecurityScanner:
    """
    Args:
        api: Clair API client
        cache_factory: Source of the scan result cache and lock
        ttl: Seconds to keep scan results
        lock_seconds: Wait and hold timeout of the per-image scan lock
    """

    def __init__(self, api: ClairApi, cache_factory: CacheFactory, ttl: Optional[float] = 3600, lock_seconds: float = 300):
        self.api = api
        self.lock_seconds = lock_seconds
        self._cache = cache_factory.get(ScanResult, ttl=ttl)

    async def get_scan(self, image: Image, hard: bool = False) -> Optional[ScanResult]:
        """
        Vulnerability summary of an image.

        Args:
            image: Image to look up
            hard: Ignore the cached result and ask Clair

        Returns:
            ScanResult, or None if Clair never analyzed the image
        """
        key = scan_key(image)
        if not hard:
            result, found = await self._cache.try_get(key)
            if found:
                return result

        if not image.layers:
            return None

        try:
            envelope = await self.api.get_layer_result(image.layers[-1].digest)
        except ScanBackendError as e:
            if e.status == 404:
                return None
            raise

        result = to_scan_result(envelope, image.digest)
        await self._cache.set(key, result)
        return result

    async def _is_analyzed(self, layer: Layer) -> bool:
        try:
            await self.api.get_layer_result(layer.digest, features=False, vulnerabilities=False)
            return True
        except ScanBackendError as e:
            if e.status == 404:
                return False
            raise

    async def _top_has_result(self, image: Image) -> bool:
        try:
            return await self._is_analyzed(image.layers[-1])
        except asyncio.TimeoutError:
            logger.warning(f"Timed out checking the top layer of {image.digest[:19]}")
            return False

    async def _submit(self, registry, repository: str, layer: Layer, parent: Optional[Layer]) -> LayerSubmission:
        try:
            if await self._is_analyzed(layer):
                return LayerSubmission(layer, ANALYZED)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out checking layer {layer.digest[:19]} of {repository}")
            return LayerSubmission(layer, FAILED, f"Timed out checking layer {layer.digest}")

        proxy = await registry.get_layer_proxy_info(repository, layer)
        request = ClairLayerRequest(layer=ClairLayerSubmission(
            name=layer.digest,
            parent_name=parent.digest if parent else None,
            path=proxy.layer_url,
            headers={"Authorization": proxy.layer_authorization} if proxy.layer_authorization else None,
        ))

        try:
            await self.api.submit_layer(request)
        except ScanBackendError as e:
            if e.status != 422:
                raise
            # Can be transient or a genuinely unscannable layer
            logger.warning(f"Clair could not analyze layer {layer.digest[:19]} of {repository}")
            return LayerSubmission(layer, FAILED, parse_clair_error(e.content))
        except asyncio.TimeoutError:
            logger.warning(f"Timed out submitting layer {layer.digest[:19]} of {repository}")
            return LayerSubmission(layer, FAILED, f"Timed out submitting layer {layer.digest}")

        return LayerSubmission(layer, SUBMITTED)

    async def request_scan(self, registry, repository: str, image: Image) -> None:
        """
        Submit every layer Clair has not analyzed yet, base layer first.

        Single-flight per image digest through the `scan:<digest>` lock. If a
        layer fails and the topmost layer still has no analysis, a Failed
        result is cached so the image is not resubmitted until it expires.
        """
        key = scan_key(image)
        if await self._cache.exists(key):
            return

        async with self._cache.take_lock(f"scan:{image.digest}", self.lock_seconds, self.lock_seconds):
            # Another worker may have finished while we waited
            if await self._cache.exists(key):
                return

            walk = ScanWalk()
            for layer in image.layers:
                walk = walk.record(await self._submit(registry, repository, layer, walk.parent))

            logger.info(
                f"Scan walk of {repository}@{image.digest[:19]}: {walk.submitted} submitted, {len(walk.errors)} failed"
            )

            if walk.failed and image.layers and not await self._top_has_result(image):
                await self._cache.set(key, ScanResult(
                    status=ScanStatus.FAILED,
                    message=walk.errors[-1],
                    digest=image.digest,
                ))
