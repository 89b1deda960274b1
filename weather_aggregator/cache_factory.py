"""
Cache backend selection.

The backend is chosen once per process from ``CacheConfig.STRATEGY`` and
handed to callers wrapped in ``UnifiedCache``, so callers always await the
same contract whether the store is in-process or remote.
"""

import inspect
import logging
from typing import Any, Dict, Optional, Union

from weather_aggregator.cache_service import CacheError, DynamoDBCacheService
from weather_aggregator.config import CacheConfig
from weather_aggregator.memory_cache import MemoryCache

logger = logging.getLogger(__name__)

CacheBackend = Union[MemoryCache, DynamoDBCacheService]


async def _resolve(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class UnifiedCache:
    """Async facade over a memory or DynamoDB cache backend."""

    def __init__(self, backend: CacheBackend):
        self.backend = backend

    @property
    def strategy(self) -> str:
        if isinstance(self.backend, DynamoDBCacheService):
            return CacheConfig.DYNAMODB
        return CacheConfig.MEMORY

    async def set(self, key: str, value: Any, ttl_ms: int = CacheConfig.DEFAULT_TTL_MS):
        return await _resolve(self.backend.set(key, value, ttl_ms))

    async def get(self, key: str) -> Optional[Any]:
        return await _resolve(self.backend.get(key))

    async def has(self, key: str) -> bool:
        return await _resolve(self.backend.has(key))

    async def delete(self, key: str) -> bool:
        return await _resolve(self.backend.delete(key))

    async def clear(self):
        return await _resolve(self.backend.clear())

    async def size(self) -> int:
        return await _resolve(self.backend.size())

    async def get_stats(self) -> Dict[str, Any]:
        return await _resolve(self.backend.get_stats())


async def create_cache(strategy: Optional[str] = None) -> UnifiedCache:
    """
    Build the cache for the configured strategy.

    A DynamoDB store that cannot connect is replaced by a memory cache so the
    service keeps running without a shared cache.

    Args:
        strategy: "memory" or "dynamodb" (defaults to CacheConfig.STRATEGY)

    Raises:
        ValueError: If the strategy is unknown
    """
    strategy = (strategy or CacheConfig.STRATEGY).lower()

    if strategy == CacheConfig.MEMORY:
        return UnifiedCache(MemoryCache())

    if strategy == CacheConfig.DYNAMODB:
        store = DynamoDBCacheService()
        try:
            await store.connect()
        except CacheError as e:
            logger.warning(
                "Failed to connect to DynamoDB, falling back to memory cache: %s", e
            )
            return UnifiedCache(MemoryCache())
        return UnifiedCache(store)

    raise ValueError(f"Unknown cache strategy: {strategy}")
