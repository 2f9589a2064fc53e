"""
Rate limiting using SlowAPI.
"""

import structlog
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from dotmac.entitlements.settings import get_settings

logger = structlog.get_logger(__name__)


def get_limiter() -> Limiter:
    """Limiter backed by Redis when a storage URL is configured, else in-memory."""
    config = get_settings().rate_limit
    if config.storage_url:
        return Limiter(
            key_func=get_remote_address,
            storage_uri=config.storage_url,
            enabled=config.enabled,
        )
    logger.debug("rate_limit.in_memory_storage")
    return Limiter(key_func=get_remote_address, enabled=config.enabled)


limiter = get_limiter()


def quote_limit() -> str:
    return get_settings().rate_limit.quote_limit


__all__ = [
    "RateLimitExceeded",
    "_rate_limit_exceeded_handler",
    "get_limiter",
    "limiter",
    "quote_limit",
]
