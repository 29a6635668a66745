"""
Cache invalidation for slot and wallet mutations.

The cache tracks no dependencies itself; every writer calls
``CacheInvalidator.invalidate`` after commit with the kind of mutation it
performed, and the invalidator deletes exactly the keys that kind makes stale.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .cache_service import CacheService

import structlog

logger = structlog.get_logger(__name__)


class InvalidationTrigger(str, Enum):
    """Types of mutations that trigger cache invalidation."""
    SLOT_CREATED = "slot_created"
    SLOT_EXTENDED = "slot_extended"
    SLOT_UPGRADED = "slot_upgraded"
    EARNINGS_ACCRUED = "earnings_accrued"
    EARNINGS_CLAIMED = "earnings_claimed"
    AUTO_CLAIMED = "auto_claimed"
    SLOT_EXPIRED = "slot_expired"
    RECONCILED = "reconciled"


class CacheInvalidator:
    """Maps a mutation to the cache keys it makes stale."""

    def __init__(self, cache_service: CacheService):
        self.cache = cache_service
        self.keys = cache_service.keys

        # Track invalidation metrics
        self.invalidation_metrics: Dict[str, Any] = {
            "total_invalidations": 0,
            "invalidations_by_trigger": {},
            "keys_invalidated": 0,
            "last_invalidation": None
        }

    def keys_for(
        self,
        trigger: InvalidationTrigger,
        owner_id: str,
        slot_ids: Iterable[int] = (),
    ) -> List[str]:
        """
        Keys made stale by ``trigger`` for one owner.

        Every trigger changes at least one of the slot counts or sums the
        global stats view aggregates, so that key is always included.
        """
        keys = [self.keys.owner_snapshot_key(owner_id)]
        keys.extend(self.keys.slot_snapshot_key(slot_id) for slot_id in slot_ids)
        keys.append(self.keys.global_stats_key())
        return keys

    async def invalidate(
        self,
        trigger: InvalidationTrigger,
        owner_id: str,
        slot_ids: Optional[Iterable[int]] = None,
    ) -> List[str]:
        """Delete the keys ``trigger`` made stale. Returns the keys targeted."""
        keys = self.keys_for(trigger, owner_id, slot_ids or ())
        await self.cache.delete(*keys)
        self._update_metrics(trigger, len(keys))

        logger.debug(
            "Cache invalidated",
            trigger=trigger.value,
            owner_id=owner_id,
            keys=len(keys)
        )
        return keys

    def _update_metrics(self, trigger: InvalidationTrigger, keys_count: int) -> None:
        by_trigger = self.invalidation_metrics["invalidations_by_trigger"]
        by_trigger[trigger.value] = by_trigger.get(trigger.value, 0) + 1
        self.invalidation_metrics["total_invalidations"] += 1
        self.invalidation_metrics["keys_invalidated"] += keys_count
        self.invalidation_metrics["last_invalidation"] = datetime.now(timezone.utc).isoformat()

    def get_invalidation_metrics(self) -> Dict[str, Any]:
        return dict(self.invalidation_metrics)
