"""
Multi-tier caching service.

Reads walk the tiers top-down (in-process memory, then Redis). A hit in a
lower tier is promoted into the tiers above it with its remaining TTL; a miss
everywhere calls the fallback and writes the result to every tier. A tier
that raises is logged and skipped so the read still succeeds.
"""

import fnmatch
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mining_engine.core.config import Settings, settings
from .cache_keys import CacheKeyBuilder, get_cache_key_builder
from .redis_client import RedisClient

import structlog
from cachetools import TLRUCache

logger = structlog.get_logger(__name__)


@dataclass
class CacheConfig:
    """TTL presets, in seconds, for the cached views."""
    slot_snapshot_ttl: int = 15
    user_snapshot_ttl: int = 30
    global_stats_ttl: int = 60
    default_ttl: int = 60

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "CacheConfig":
        return cls(
            slot_snapshot_ttl=config.slot_snapshot_ttl,
            user_snapshot_ttl=config.user_snapshot_ttl,
            global_stats_ttl=config.global_stats_ttl,
        )


@dataclass
class CacheEntry:
    """Cached payload with absolute creation and expiry times (epoch seconds)."""
    value: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_ttl(self, now: float) -> float:
        return max(self.expires_at - now, 0.0)

    def to_json(self) -> str:
        return json.dumps(
            {"value": self.value, "created_at": self.created_at, "expires_at": self.expires_at},
            default=str,
            ensure_ascii=False
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(value=data["value"], created_at=data["created_at"], expires_at=data["expires_at"])


class CacheTier(ABC):
    """One storage level of the cache."""

    name: str = "tier"

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    async def set(self, key: str, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...


def _entry_expiry(_key: str, entry: CacheEntry, _now: float) -> float:
    return entry.expires_at


class MemoryCacheTier(CacheTier):
    """
    In-process L1 tier on a ``cachetools.TLRUCache``.

    Each entry expires at its own ``expires_at``; past ``max_entries`` the
    least recently used entry is evicted.
    """

    name = "memory"

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self.clock = clock
        self._entries: TLRUCache = TLRUCache(maxsize=max_entries, ttu=_entry_expiry, timer=clock)

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        self._entries.expire()
        matching = [key for key in list(self._entries) if fnmatch.fnmatchcase(key, pattern)]
        return await self.delete(*matching)

    async def clear(self) -> None:
        self._entries.clear()


class RedisCacheTier(CacheTier):
    """Shared L2 tier storing JSON entries with a native Redis expiry."""

    name = "redis"

    def __init__(
        self,
        redis_client: RedisClient,
        key_builder: Optional[CacheKeyBuilder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.keys = key_builder or get_cache_key_builder()
        self.clock = clock

    async def get(self, key: str) -> Optional[CacheEntry]:
        raw = await self.redis.get(key)
        if not raw:
            return None
        try:
            return CacheEntry.from_json(raw)
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning("Discarding malformed cache entry", key=key)
            await self.redis.delete(key)
            return None

    async def set(self, key: str, entry: CacheEntry) -> None:
        ttl = max(int(entry.remaining_ttl(self.clock()) + 0.999), 1)
        await self.redis.set(key, entry.to_json(), ex=ttl)

    async def delete(self, *keys: str) -> int:
        return await self.redis.delete(*keys)

    async def delete_pattern(self, pattern: str) -> int:
        keys = await self.redis.keys_matching(pattern)
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def clear(self) -> None:
        await self.delete_pattern(self.keys.namespace_pattern())


@dataclass
class CacheStats:
    hits: Dict[str, int] = field(default_factory=dict)
    misses: int = 0
    fallback_calls: int = 0
    tier_errors: int = 0


class CacheService:
    """High-level multi-tier cache with read-through fallback."""

    def __init__(
        self,
        tiers: List[CacheTier],
        key_builder: Optional[CacheKeyBuilder] = None,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.tiers = tiers
        self.keys = key_builder or get_cache_key_builder()
        self.config = config or CacheConfig.from_settings()
        self.clock = clock
        self.stats = CacheStats()
        self.logger = logger.bind(service="cache")

    def _tier_failed(self, tier: CacheTier, operation: str, key: str, error: Exception) -> None:
        self.stats.tier_errors += 1
        self.logger.warning(
            "Cache tier operation failed",
            tier=tier.name,
            operation=operation,
            key=key,
            error=str(error)
        )

    async def _promote(self, upper_tiers: List[CacheTier], key: str, entry: CacheEntry) -> None:
        for tier in upper_tiers:
            try:
                await tier.set(key, entry)
            except Exception as e:
                self._tier_failed(tier, "promote", key, e)

    async def get(
        self,
        key: str,
        fallback: Optional[Callable[[], Awaitable[Any]]] = None,
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Cached value for ``key``.

        On a miss in every tier, ``fallback`` (if given) is awaited and its
        result stored with ``ttl``. Errors raised by the fallback propagate.
        """
        now = self.clock()
        for index, tier in enumerate(self.tiers):
            try:
                entry = await tier.get(key)
            except Exception as e:
                self._tier_failed(tier, "get", key, e)
                continue

            if entry is None or entry.is_expired(now):
                continue

            self.stats.hits[tier.name] = self.stats.hits.get(tier.name, 0) + 1
            if index > 0:
                await self._promote(self.tiers[:index], key, entry)
            return entry.value

        self.stats.misses += 1
        if fallback is None:
            return None

        self.stats.fallback_calls += 1
        value = await fallback()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        now = self.clock()
        entry = CacheEntry(value=value, created_at=now, expires_at=now + (ttl or self.config.default_ttl))
        for tier in self.tiers:
            try:
                await tier.set(key, entry)
            except Exception as e:
                self._tier_failed(tier, "set", key, e)

    async def delete(self, *keys: str) -> int:
        """Delete keys from every tier; returns the highest per-tier count."""
        if not keys:
            return 0
        deleted = 0
        for tier in self.tiers:
            try:
                deleted = max(deleted, await tier.delete(*keys))
            except Exception as e:
                self._tier_failed(tier, "delete", ",".join(keys), e)
        self.logger.debug("Cache delete", keys=keys, deleted=deleted)
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        for tier in self.tiers:
            try:
                deleted = max(deleted, await tier.delete_pattern(pattern))
            except Exception as e:
                self._tier_failed(tier, "delete_pattern", pattern, e)
        return deleted

    async def clear(self) -> None:
        for tier in self.tiers:
            try:
                await tier.clear()
            except Exception as e:
                self._tier_failed(tier, "clear", "*", e)
        self.logger.info("Cache cleared", tiers=[tier.name for tier in self.tiers])

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache usage statistics."""
        total_hits = sum(self.stats.hits.values())
        lookups = total_hits + self.stats.misses
        return {
            "tiers": [tier.name for tier in self.tiers],
            "hits": dict(self.stats.hits),
            "misses": self.stats.misses,
            "fallback_calls": self.stats.fallback_calls,
            "tier_errors": self.stats.tier_errors,
            "hit_rate": round(total_hits / max(lookups, 1) * 100, 2),
        }


def build_cache_service(redis_client: Optional[RedisClient] = None, config: Settings = settings) -> CacheService:
    """Memory tier always; Redis tier when a connected client is supplied."""
    tiers: List[CacheTier] = [MemoryCacheTier(max_entries=config.memory_cache_max_entries)]
    if redis_client is not None:
        tiers.append(RedisCacheTier(redis_client))
    return CacheService(tiers, config=CacheConfig.from_settings(config))
