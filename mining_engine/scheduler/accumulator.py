"""
Earnings accumulator.

Parks time-proportional earnings on every active, unexpired slot and advances
its watermark. The wallet is never touched here; claims, auto-claims and
expiration move parked earnings into wallets.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from mining_engine.cache.invalidation import CacheInvalidator, InvalidationTrigger
from mining_engine.core.config import settings
from mining_engine.services.accrual import AccrualCalculator, quantize_amount
from mining_engine.services.slot_store import SlotFilter, SlotStore, SlotUpdate
from mining_engine.utils.time import Clock, utc_now
from mining_engine.websocket.notification_service import RealtimeNotifier
from .base import PeriodicProcessor, TickStats


@dataclass
class RecoveredOwner:
    slot_ids: List[int] = field(default_factory=list)
    amount: Decimal = Decimal("0")
    max_downtime_seconds: float = 0.0


class EarningsAccumulator(PeriodicProcessor):
    """Accrues earnings onto active slots every ``interval_seconds``."""

    name = "earnings_accumulator"

    def __init__(
        self,
        slot_store: SlotStore,
        calculator: Optional[AccrualCalculator] = None,
        invalidator: Optional[CacheInvalidator] = None,
        notifier: Optional[RealtimeNotifier] = None,
        interval_seconds: float = settings.accumulator_interval,
        batch_size: int = settings.processor_batch_size,
        recovery_threshold_seconds: float = settings.recovery_threshold_seconds,
        clock: Clock = utc_now,
        **kwargs: Any,
    ):
        super().__init__(interval_seconds, clock=clock, **kwargs)
        self.slot_store = slot_store
        self.calculator = calculator or AccrualCalculator()
        self.invalidator = invalidator
        self.notifier = notifier
        self.batch_size = batch_size
        self.recovery_threshold_seconds = recovery_threshold_seconds
        self.last_recovery: Optional[Dict[str, Any]] = None

    async def process(self, now: datetime) -> TickStats:
        return await self._accumulate(now, recovery=False)

    async def initial_tick(self, now: datetime) -> TickStats:
        return await self.recover(now)

    async def recover(self, now: datetime) -> TickStats:
        """
        Downtime recovery pass.

        An ordinary accumulation over everything the watermarks lag behind,
        which additionally reports slots idle for longer than the recovery
        threshold.
        """
        self.logger.info("Running downtime recovery", threshold_seconds=self.recovery_threshold_seconds)
        return await self._accumulate(now, recovery=True)

    async def _accumulate(self, now: datetime, recovery: bool) -> TickStats:
        tick = TickStats(start_time=now)
        updated: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        recovered: Dict[str, RecoveredOwner] = defaultdict(RecoveredOwner)
        after_id: Optional[int] = None

        while True:
            slots = await self.slot_store.find_eligible(SlotFilter(
                not_expired_at=now,
                watermark_before=now,
                after_id=after_id,
                limit=self.batch_size,
            ))
            if not slots:
                break
            after_id = slots[-1].id
            tick.slots_found += len(slots)

            updates: List[SlotUpdate] = []
            planned = {}
            for slot in slots:
                try:
                    window = self.calculator.accrue_window(slot, now)
                    if window.is_empty:
                        tick.slots_skipped += 1
                        continue
                    new_accrued = quantize_amount(slot.accrued_earnings + window.amount)
                    updates.append(SlotUpdate(
                        slot_id=slot.id,
                        expected_version=slot.version,
                        fields={"accrued_earnings": new_accrued, "last_accrued_at": window.to_at},
                    ))
                    planned[slot.id] = (slot, window, new_accrued)
                except Exception as e:
                    self.logger.error("Failed to compute slot earnings", slot_id=slot.id, error=str(e))
                    tick.record_error(slot.id, e)

            result = await self.slot_store.batch_update(updates)
            if result.used_fallback:
                tick.batch_fallbacks += 1
            for slot_id in result.conflicts:
                self.logger.info("Slot changed concurrently, retrying next tick", slot_id=slot_id)
            tick.conflicts += len(result.conflicts)
            for slot_id, error in result.failed.items():
                tick.failed += 1
                if len(tick.errors) < 20:
                    tick.errors.append(f"{slot_id}: {error}")

            for slot_id in result.applied:
                slot, window, new_accrued = planned[slot_id]
                tick.slots_processed += 1
                tick.amount_total += window.amount
                updated[slot.owner_id].append({
                    "slot_id": slot.id,
                    "accrued_earnings": str(new_accrued),
                    "delta": str(window.amount),
                    "last_accrued_at": window.to_at.isoformat(),
                })
                if recovery and window.elapsed_seconds > self.recovery_threshold_seconds:
                    owner = recovered[slot.owner_id]
                    owner.slot_ids.append(slot.id)
                    owner.amount += window.amount
                    owner.max_downtime_seconds = max(owner.max_downtime_seconds, window.elapsed_seconds)

            if len(slots) < self.batch_size:
                break

        tick.owners_affected = len(updated)
        await self._publish(updated)
        if recovery:
            await self._report_recovery(now, recovered)

        tick.end_time = self.clock()
        return tick

    async def _publish(self, updated: Dict[str, List[Dict[str, Any]]]) -> None:
        for owner_id, slot_payloads in updated.items():
            if self.invalidator:
                await self.invalidator.invalidate(
                    InvalidationTrigger.EARNINGS_ACCRUED,
                    owner_id,
                    [payload["slot_id"] for payload in slot_payloads]
                )
            if self.notifier:
                await self.notifier.notify_slot_earnings_updated(owner_id, slot_payloads)

    async def _report_recovery(self, now: datetime, recovered: Dict[str, RecoveredOwner]) -> None:
        total_slots = sum(len(owner.slot_ids) for owner in recovered.values())
        total_amount = sum((owner.amount for owner in recovered.values()), Decimal("0"))

        self.last_recovery = {
            "ran_at": now.isoformat(),
            "owners": len(recovered),
            "slots": total_slots,
            "amount": str(total_amount),
        }

        if not recovered:
            self.logger.info("Downtime recovery found no lagging slots")
            return

        self.logger.warning(
            "Recovered earnings after downtime",
            owners=len(recovered),
            slots=total_slots,
            amount=str(total_amount),
            max_downtime_seconds=max(owner.max_downtime_seconds for owner in recovered.values())
        )
        if self.notifier:
            for owner_id, owner in recovered.items():
                await self.notifier.notify_earnings_recovered(
                    owner_id, owner.slot_ids, owner.amount, owner.max_downtime_seconds
                )

    async def health_check(self) -> Dict[str, Any]:
        report = await super().health_check()
        report["last_recovery"] = self.last_recovery
        return report
