"""
Cache backends for resolved entitlement data.

One backend instance is built per process and handed to whoever needs it;
nothing here is module-global.
"""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis
import structlog
from cachetools import TLRUCache  # type: ignore[import-untyped]

from dotmac.entitlements.settings import CacheBackendType, Settings

logger = structlog.get_logger(__name__)


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get value from cache."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Set value in cache with optional TTL."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""

    @abstractmethod
    async def clear(self) -> bool:
        """Clear all keys owned by this backend."""

    async def close(self) -> None:
        """Release backend resources."""


class LocalCacheBackend(CacheBackend):
    """Process-local cache on a cachetools TLRU map with per-entry TTL."""

    def __init__(
        self,
        maxsize: int = 10000,
        default_ttl: int = 60,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=self._ttu, timer=timer)

    @staticmethod
    def _ttu(_key: str, value: tuple[Any, int], now: float) -> float:
        return now + value[1]

    async def get(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        return entry[0] if entry is not None else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        self._cache[key] = (value, ttl if ttl is not None else self.default_ttl)
        return True

    async def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return key in self._cache

    async def clear(self) -> bool:
        self._cache.clear()
        return True


class RedisCacheBackend(CacheBackend):
    """Shared cache for multi-instance deployments. Values are stored as JSON."""

    def __init__(
        self, client: redis.Redis, key_prefix: str = "entitlements", default_ttl: int = 60
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("cache.invalid_payload", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        await self.client.set(
            self._key(key), json.dumps(value, default=str), ex=ttl or self.default_ttl
        )
        return True

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(self._key(key)))

    async def clear(self) -> bool:
        keys = [k async for k in self.client.scan_iter(match=f"{self.key_prefix}:*")]
        if keys:
            await self.client.delete(*keys)
        return True

    async def close(self) -> None:
        await self.client.aclose()


def build_cache_backend(config: Settings) -> CacheBackend:
    """Create the configured backend. Called once at application startup."""
    if config.cache.backend == CacheBackendType.REDIS:
        client = redis.from_url(
            config.redis.cache_url,
            decode_responses=True,
            max_connections=config.redis.max_connections,
        )
        logger.info("cache.backend_selected", backend="redis")
        return RedisCacheBackend(
            client,
            key_prefix=config.cache.key_prefix,
            default_ttl=config.cache.feature_ttl_seconds,
        )

    logger.info("cache.backend_selected", backend="local")
    return LocalCacheBackend(
        maxsize=config.cache.max_size, default_ttl=config.cache.feature_ttl_seconds
    )
