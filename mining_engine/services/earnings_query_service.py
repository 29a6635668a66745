"""
Read path for earnings: live accrued totals, recovery info and cached snapshots.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.config import settings
from mining_engine.core.exceptions import SlotNotFoundError
from mining_engine.services.accrual import AccrualCalculator, quantize_amount
from mining_engine.services.balance_service import BalanceUpdateService
from mining_engine.services.slot_store import SlotFilter, SlotStore
from mining_engine.utils.time import Clock, utc_now


logger = structlog.get_logger(__name__)


@dataclass
class SlotRecovery:
    slot_id: int
    last_accrued_at: datetime
    pending_seconds: float
    pending_earnings: Decimal


@dataclass
class RecoveryInfo:
    """Un-accrued time per active slot, as seen right now."""
    owner_id: str
    checked_at: datetime
    threshold_seconds: float
    slots: List[SlotRecovery] = field(default_factory=list)

    @property
    def total_pending_earnings(self) -> Decimal:
        return sum((slot.pending_earnings for slot in self.slots), Decimal("0"))

    @property
    def max_pending_seconds(self) -> float:
        return max((slot.pending_seconds for slot in self.slots), default=0.0)

    @property
    def needs_recovery(self) -> bool:
        return self.max_pending_seconds > self.threshold_seconds


class EarningsQueryService:
    """Read-only views over slots and wallets."""

    def __init__(
        self,
        slot_store: SlotStore,
        balance_service: BalanceUpdateService,
        calculator: Optional[AccrualCalculator] = None,
        cache: Optional[CacheService] = None,
        recovery_threshold_seconds: float = settings.recovery_threshold_seconds,
        currency: str = settings.default_currency,
        clock: Clock = utc_now,
    ):
        self.slot_store = slot_store
        self.balance_service = balance_service
        self.calculator = calculator or AccrualCalculator()
        self.cache = cache
        self.recovery_threshold_seconds = recovery_threshold_seconds
        self.currency = currency
        self.clock = clock

    async def get_accrued_earnings(self, owner_id: str) -> Decimal:
        """Parked plus live pending earnings over the owner's active slots. Never cached."""
        now = self.clock()
        slots = await self.slot_store.find_eligible(SlotFilter(owner_id=owner_id))
        total = sum((self.calculator.claimable(slot, now) for slot in slots), Decimal("0"))
        return quantize_amount(total)

    async def get_recovery_info(self, owner_id: str) -> RecoveryInfo:
        now = self.clock()
        slots = await self.slot_store.find_eligible(SlotFilter(owner_id=owner_id))
        info = RecoveryInfo(owner_id=owner_id, checked_at=now, threshold_seconds=self.recovery_threshold_seconds)
        for slot in slots:
            window = self.calculator.accrue_window(slot, now)
            info.slots.append(SlotRecovery(
                slot_id=slot.id,
                last_accrued_at=slot.last_accrued_at,
                pending_seconds=window.elapsed_seconds,
                pending_earnings=window.amount,
            ))
        return info

    def _slot_view(self, slot, now: datetime) -> Dict[str, Any]:
        view = slot.to_snapshot()
        view["state"] = slot.state(now).value
        view["claimable"] = str(self.calculator.claimable(slot, now)) if slot.is_active else "0"
        return view

    async def get_slot_snapshot(self, slot_id: int) -> Dict[str, Any]:
        async def load():
            slot = await self.slot_store.get(slot_id)
            if slot is None:
                raise SlotNotFoundError(slot_id)
            return self._slot_view(slot, self.clock())

        if self.cache is None:
            return await load()
        return await self.cache.get(
            self.cache.keys.slot_snapshot_key(slot_id), load, self.cache.config.slot_snapshot_ttl
        )

    async def get_owner_snapshot(self, owner_id: str) -> Dict[str, Any]:
        async def load():
            now = self.clock()
            slots = await self.slot_store.find_eligible(SlotFilter(owner_id=owner_id))
            balance = await self.balance_service.get_balance(owner_id, self.currency)
            views = [self._slot_view(slot, now) for slot in slots]
            claimable = sum((Decimal(view["claimable"]) for view in views), Decimal("0"))
            return {
                "owner_id": owner_id,
                "currency": self.currency,
                "balance": str(balance),
                "active_slots": len(views),
                "total_principal": str(sum((slot.principal for slot in slots), Decimal("0"))),
                "claimable": str(quantize_amount(claimable)),
                "slots": views,
                "generated_at": now.isoformat(),
            }

        if self.cache is None:
            return await load()
        return await self.cache.get(
            self.cache.keys.owner_snapshot_key(owner_id), load, self.cache.config.user_snapshot_ttl
        )

    async def get_global_stats(self) -> Dict[str, Any]:
        async def load():
            totals = await self.slot_store.aggregate_totals()
            return {
                **{k: (str(v) if isinstance(v, Decimal) else v) for k, v in totals.items()},
                "generated_at": self.clock().isoformat(),
            }

        if self.cache is None:
            return await load()
        return await self.cache.get(
            self.cache.keys.global_stats_key(), load, self.cache.config.global_stats_ttl
        )
