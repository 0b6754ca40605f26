"""
Cache store abstraction. Redis OR no-op. Controlled by FF_USE_REDIS flag.

Components receive a CacheStore instance; they never reach for the Redis
client themselves.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from .flags import get_flags
from .redis import get_redis

logger = logging.getLogger(__name__)


class CacheStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value, or None on miss."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the count removed."""
        ...


class RedisCacheStore(CacheStore):
    """JSON values in Redis. Errors are logged and treated as misses."""

    def __init__(self, client=None):
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = get_redis()
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._get_client().get(key)
        except Exception as e:
            logger.error("Cache get failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._get_client().set(key, json.dumps(value, default=str), ex=ttl_seconds)
        except Exception as e:
            logger.error("Cache set failed for %s: %s", key, e)

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except Exception as e:
            logger.error("Cache delete failed for %s: %s", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        client = self._get_client()
        removed = 0
        try:
            batch = []
            async for key in client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await client.delete(*batch)
                    batch = []
            if batch:
                removed += await client.delete(*batch)
        except Exception as e:
            logger.error("Cache pattern delete failed for %s: %s", pattern, e)
            return removed

        if removed:
            logger.info("Cleared %d cache keys for pattern %s", removed, pattern)
        return removed


class NullCacheStore(CacheStore):
    """Used when Redis is disabled. Every read misses, every write is dropped."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def delete_pattern(self, pattern: str) -> int:
        return 0


_cache_store: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    """Process-wide cache store, built once by the bootstrap."""
    global _cache_store
    if _cache_store is None:
        flags = get_flags()
        _cache_store = RedisCacheStore() if flags.use_redis else NullCacheStore()
    return _cache_store
