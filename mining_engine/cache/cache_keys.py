"""
Cache key building utilities.
"""

from typing import Any, Optional

from mining_engine.core.config import settings


class CacheKeyBuilder:
    """Builds namespaced keys of the form ``<prefix>:<env>:<kind>:<id>``."""

    def __init__(self, prefix: Optional[str] = None, environment: Optional[str] = None):
        self.prefix = prefix if prefix is not None else settings.redis_prefix
        self.environment = environment if environment is not None else settings.environment
        self.separator = ":"

    def build(self, *parts: Any) -> str:
        """Build cache key from parts; ``None`` parts are skipped."""
        normalized_parts = []
        if self.prefix:
            normalized_parts.append(self.prefix)
        if self.environment:
            normalized_parts.append(self.environment)
        for part in parts:
            if part is not None:
                normalized_parts.append(str(part))
        return self.separator.join(normalized_parts)

    # Slot-related keys
    def slot_snapshot_key(self, slot_id: int) -> str:
        return self.build("slot", slot_id)

    # Owner-related keys
    def owner_snapshot_key(self, owner_id: str) -> str:
        return self.build("owner", owner_id)

    # Statistics keys
    def global_stats_key(self) -> str:
        return self.build("global_stats")

    # Pattern keys for bulk operations
    def owner_pattern(self, owner_id: str) -> str:
        """Every key holding data of one owner."""
        return self.build("*", owner_id)

    def namespace_pattern(self) -> str:
        return self.build("*")


# Global cache key builder instance
cache_keys = CacheKeyBuilder()


def get_cache_key_builder() -> CacheKeyBuilder:
    """Get global cache key builder instance."""
    return cache_keys
