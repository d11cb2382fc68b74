"""
Content Scanner

Indexes what a path inside an image holds and caches the answer per
(image digest, path). Lookups are pure cache reads; indexing runs in
background workers fed by an asyncio queue so API requests never wait on a
layer download.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from cache.cache import CacheFactory
from content.layer_extractor import normalize_path
from registry.models import Image
from utils.async_io import run_blocking

logger = logging.getLogger(__name__)


class Result(BaseModel):
    """
    Outcome of indexing one path.

    A directory carries `children`, a file carries its raw `content`
    (base64 in the cache), a missing path only `exists=False`.
    """
    model_config = ConfigDict(ser_json_bytes='base64', val_json_bytes='base64')

    exists: bool
    children: Optional[List[str]] = None
    content: Optional[bytes] = None


@dataclass
class IndexRequest:
    """Work item for the background indexer"""
    registry: object  # RegistryClient
    repository: str
    image: Image
    path: str


def content_key(image: Image, path: str) -> str:
    return f"static:content:{image.digest}:{normalize_path(path)}"


class ContentScanner:
    """
    Indexes and serves path lookups inside images.

    Args:
        cache_factory: Source of the Result cache
        ttl: Seconds to keep results; None keeps them forever
        workers: Number of background index workers
    """

    def __init__(self, cache_factory: CacheFactory, ttl: Optional[float] = None, workers: int = 1):
        self._cache = cache_factory.get(Result, ttl=ttl)
        self._workers = workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._tasks: List[asyncio.Task] = []

    async def get_path(self, image: Image, path: str) -> Optional[Result]:
        """
        Cached result for a path, or None if the path has not been indexed yet.
        """
        result, found = await self._cache.try_get(content_key(image, path))
        return result if found else None

    async def index(self, registry, repository: str, image: Image, path: str) -> Result:
        """
        Find the path in the image and cache what it holds.

        A directory yields the file listing of the whole merged image tree,
        not just the entries under that directory.
        """
        layer_path = await registry.find_path(repository, image, path)

        if layer_path is None:
            result = Result(exists=False)
        elif layer_path.is_directory:
            result = Result(exists=True, children=await registry.get_image_files(repository, image))
        else:
            stream = await registry.get_file(repository, layer_path.layer, path)
            try:
                data = await run_blocking(stream.read)
            finally:
                stream.close()
            result = Result(exists=True, content=data)

        await self._cache.set(content_key(image, path), result)
        logger.debug(f"Indexed {repository}@{image.digest[:19]}:{path or '/'} (exists={result.exists})")
        return result

    def enqueue(self, registry, repository: str, image: Image, path: str) -> bool:
        """
        Queue a path for background indexing.

        Returns:
            False if the queue is full and the request was dropped
        """
        try:
            self._queue.put_nowait(IndexRequest(registry, repository, image, path))
            return True
        except asyncio.QueueFull:
            logger.warning(f"Index queue full, dropped request for {repository}@{image.digest[:19]}:{path}")
            return False

    async def start(self):
        """Start the background index workers"""
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._worker(n)) for n in range(self._workers)]
        logger.info(f"Content scanner started with {self._workers} worker(s)")

    async def stop(self):
        """Stop the workers and drop pending requests"""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        logger.info("Content scanner stopped")

    async def _worker(self, number: int):
        while True:
            request = await self._queue.get()
            try:
                if await self.get_path(request.image, request.path) is None:
                    await self.index(request.registry, request.repository, request.image, request.path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Index worker {number} failed on {request.repository}@{request.image.digest[:19]}:{request.path}: {e}"
                )
            finally:
                self._queue.task_done()
