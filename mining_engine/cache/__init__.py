"""
Multi-tier caching layer (in-process memory over Redis).
"""

from .redis_client import RedisClient
from .cache_service import (
    CacheConfig,
    CacheEntry,
    CacheService,
    CacheTier,
    MemoryCacheTier,
    RedisCacheTier,
    build_cache_service,
)
from .cache_keys import CacheKeyBuilder, get_cache_key_builder
from .invalidation import CacheInvalidator, InvalidationTrigger

__all__ = [
    "RedisClient",
    "CacheConfig",
    "CacheEntry",
    "CacheService",
    "CacheTier",
    "MemoryCacheTier",
    "RedisCacheTier",
    "build_cache_service",
    "CacheKeyBuilder",
    "get_cache_key_builder",
    "CacheInvalidator",
    "InvalidationTrigger",
]
