"""
Configuration Management for LayerLens
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


class HealthCheckFilter(logging.Filter):
    """Filter out health check and routine polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200 OK' in message or '200' in str(getattr(record, 'args', '')):
            if '/health' in message:
                return False
            # Repository list polling by the UI
            if '/api/repositories/list' in message:
                return False
        return True


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = logging.getLevelName(AppConfig.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, 'layerlens.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, '').strip()
    return value or None


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('LAYERLENS_HOST', '0.0.0.0')
    PORT = int(os.getenv('LAYERLENS_PORT', 8080))

    from .paths import LAYER_CACHE_DIR as DEFAULT_LAYER_CACHE_DIR

    # Registry access
    # Local mode when set: read registry storage directly from this directory
    REGISTRY_ROOT = _optional('LAYERLENS_REGISTRY_ROOT')
    REGISTRY_HOST = os.getenv('LAYERLENS_REGISTRY_HOST', 'registry-1.docker.io')
    REGISTRY_USERNAME = _optional('LAYERLENS_REGISTRY_USERNAME')
    REGISTRY_PASSWORD = _optional('LAYERLENS_REGISTRY_PASSWORD')
    # Registry URL serving REGISTRY_ROOT, used to hand out layer URLs in local mode
    LAYER_PROXY_URL = _optional('LAYERLENS_LAYER_PROXY_URL')
    LAYER_CACHE_DIR = os.getenv('LAYERLENS_LAYER_CACHE_DIR', DEFAULT_LAYER_CACHE_DIR)
    REGISTRY_TIMEOUT = float(os.getenv('LAYERLENS_REGISTRY_TIMEOUT', 30))
    DOWNLOAD_TIMEOUT = float(os.getenv('LAYERLENS_DOWNLOAD_TIMEOUT', 600))

    # Cache (in-process memory cache when REDIS_URL is empty)
    REDIS_URL = _optional('LAYERLENS_REDIS_URL')
    LISTING_CACHE_TTL = int(os.getenv('LAYERLENS_LISTING_CACHE_TTL', 60))
    INDEX_CACHE_TTL = int(os.getenv('LAYERLENS_INDEX_CACHE_TTL', 3600))
    SCAN_CACHE_TTL = int(os.getenv('LAYERLENS_SCAN_CACHE_TTL', 3600))
    CONTENT_CACHE_TTL = int(os.getenv('LAYERLENS_CONTENT_CACHE_TTL', 86400))

    # Vulnerability scanning (disabled when CLAIR_URL is empty)
    CLAIR_URL = _optional('LAYERLENS_CLAIR_URL')
    CLAIR_TIMEOUT = float(os.getenv('LAYERLENS_CLAIR_TIMEOUT', 60))
    SCAN_LOCK_SECONDS = int(os.getenv('LAYERLENS_SCAN_LOCK_SECONDS', 300))

    # Content indexing
    INDEX_WORKERS = int(os.getenv('LAYERLENS_INDEX_WORKERS', 2))

    # Logging
    LOG_LEVEL = os.getenv('LAYERLENS_LOG_LEVEL', 'INFO')

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if cls.REGISTRY_ROOT and not os.path.isdir(cls.REGISTRY_ROOT):
            raise ValueError(f"Registry root does not exist: {cls.REGISTRY_ROOT}")

        if cls.REGISTRY_PASSWORD and not cls.REGISTRY_USERNAME:
            raise ValueError("LAYERLENS_REGISTRY_PASSWORD requires LAYERLENS_REGISTRY_USERNAME")

        if cls.INDEX_WORKERS < 1:
            raise ValueError(f"Index workers must be at least 1: {cls.INDEX_WORKERS}")

        for name in ('LISTING_CACHE_TTL', 'INDEX_CACHE_TTL', 'SCAN_CACHE_TTL', 'CONTENT_CACHE_TTL', 'SCAN_LOCK_SECONDS'):
            if getattr(cls, name) < 1:
                raise ValueError(f"{name} must be positive: {getattr(cls, name)}")

        return True
