#!/usr/bin/env python3
"""
LayerLens Backend - Container Registry Browser
Browses images, layers and files of local or remote registries, with
vulnerability scans through Clair

Registry Access
---------------
LAYERLENS_REGISTRY_ROOT set: registry storage is read directly from disk.
Otherwise: registry HTTP API v2 of LAYERLENS_REGISTRY_HOST, cached.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.repositories import router as repositories_router
from cache.cache import CacheFactory
from cache.memory_backend import MemoryCacheBackend
from cache.redis_backend import RedisCacheBackend
from config.paths import ensure_data_dirs
from config.settings import AppConfig, setup_logging
from content.content_scanner import ContentScanner
from content.layer_extractor import LayerExtractor
from registry.client_factory import ClientFactory
from scanning.clair_api import ClairApi
from scanning.security_scanner import SecurityScanner

setup_logging()
logger = logging.getLogger(__name__)


def build_cache_factory(config=AppConfig) -> CacheFactory:
    """Redis cache when configured, in-process memory cache otherwise"""
    if config.REDIS_URL:
        logger.info("Using Redis cache")
        backend = RedisCacheBackend(url=config.REDIS_URL)
    else:
        logger.info("Using in-process memory cache")
        backend = MemoryCacheBackend()
    return CacheFactory(backend, default_ttl=config.LISTING_CACHE_TTL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()
    ensure_data_dirs()

    logger.info("Starting LayerLens backend...")

    cache_factory = build_cache_factory()
    app.state.cache_factory = cache_factory
    app.state.client_factory = ClientFactory(AppConfig, cache_factory, LayerExtractor())

    app.state.content_scanner = ContentScanner(
        cache_factory,
        ttl=AppConfig.CONTENT_CACHE_TTL,
        workers=AppConfig.INDEX_WORKERS,
    )
    await app.state.content_scanner.start()

    app.state.security_scanner = None
    if AppConfig.CLAIR_URL:
        app.state.security_scanner = SecurityScanner(
            ClairApi(AppConfig.CLAIR_URL, timeout=AppConfig.CLAIR_TIMEOUT),
            cache_factory,
            ttl=AppConfig.SCAN_CACHE_TTL,
            lock_seconds=AppConfig.SCAN_LOCK_SECONDS,
        )
        logger.info(f"Vulnerability scanning enabled via {AppConfig.CLAIR_URL}")

    mode = f"local storage at {AppConfig.REGISTRY_ROOT}" if AppConfig.REGISTRY_ROOT else f"remote registry {AppConfig.REGISTRY_HOST}"
    logger.info(f"LayerLens backend ready ({mode})")

    yield

    logger.info("Shutting down LayerLens backend...")

    try:
        await app.state.content_scanner.stop()
    except Exception as e:
        logger.error(f"Error stopping content scanner: {e}")

    try:
        await cache_factory.close()
        logger.info("Cache closed")
    except Exception as e:
        logger.error(f"Error closing cache: {e}")


app = FastAPI(
    title="LayerLens API",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(repositories_router)


@app.get("/health")
async def health_check():
    """Health check endpoint - no authentication required"""
    return {"status": "healthy", "service": "layerlens-backend"}
