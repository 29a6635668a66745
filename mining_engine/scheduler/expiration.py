"""
Slot expiration processor.

Closes active slots whose expiry has passed and credits their remaining
earnings. Deactivation and wallet credit share one transaction; the slot
write is version-guarded so a concurrent writer makes the whole expiration
roll back and nothing is credited twice.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from mining_engine.cache.invalidation import CacheInvalidator, InvalidationTrigger
from mining_engine.core.config import settings
from mining_engine.core.database import transaction_scope, translate_store_errors
from mining_engine.core.exceptions import ConcurrencyConflictError, SlotNotFoundError
from mining_engine.models.activity import ActivityLogType
from mining_engine.models.slot import MiningSlot
from mining_engine.services.accrual import ZERO, AccrualCalculator, quantize_amount
from mining_engine.services.balance_service import BalanceUpdateResult, BalanceUpdateService
from mining_engine.services.ledger import Ledger
from mining_engine.services.slot_store import SlotFilter, SlotStore
from mining_engine.utils.time import Clock, utc_now
from mining_engine.websocket.notification_service import RealtimeNotifier
from .base import PeriodicProcessor, TickStats


@dataclass
class ExpirationOutcome:
    slot_id: int
    owner_id: str
    final_earnings: Decimal
    balance: Optional[BalanceUpdateResult] = None


@dataclass
class ReconciliationReport:
    """Result of comparing slot bookkeeping with the ledger."""
    checked: int = 0
    closed_without_credit: List[int] = field(default_factory=list)
    credited: Dict[int, Decimal] = field(default_factory=dict)
    # Closed slots whose ledger credits exceed claimed_earnings; reported, never debited
    over_credited: Dict[int, Decimal] = field(default_factory=dict)
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def amount_credited(self) -> Decimal:
        return sum(self.credited.values(), Decimal("0"))


class ExpirationProcessor(PeriodicProcessor):
    """Finalizes slots past their expiry every ``interval_seconds``."""

    name = "slot_expiration"

    def __init__(
        self,
        slot_store: SlotStore,
        balance_service: BalanceUpdateService,
        calculator: Optional[AccrualCalculator] = None,
        invalidator: Optional[CacheInvalidator] = None,
        notifier: Optional[RealtimeNotifier] = None,
        currency: str = settings.default_currency,
        interval_seconds: float = settings.expiration_interval,
        batch_size: int = settings.processor_batch_size,
        grace_seconds: float = settings.expiration_grace_seconds,
        clock: Clock = utc_now,
        **kwargs: Any,
    ):
        super().__init__(interval_seconds, clock=clock, **kwargs)
        self.slot_store = slot_store
        self.balance_service = balance_service
        self.ledger: Ledger = balance_service.ledger
        self.calculator = calculator or AccrualCalculator()
        self.invalidator = invalidator
        self.notifier = notifier
        self.currency = currency
        self.batch_size = batch_size
        self.grace_seconds = grace_seconds

    async def process(self, now: datetime) -> TickStats:
        tick = TickStats(start_time=now)
        owners = set()
        after_id: Optional[int] = None

        while True:
            slots = await self.slot_store.find_eligible(SlotFilter(
                expired_at=now,
                after_id=after_id,
                limit=self.batch_size,
            ))
            if not slots:
                break
            after_id = slots[-1].id
            tick.slots_found += len(slots)

            for slot in slots:
                try:
                    outcome = await self.expire_slot(slot)
                except ConcurrencyConflictError:
                    self.logger.info("Slot changed concurrently, expiration retried next tick", slot_id=slot.id)
                    tick.conflicts += 1
                    continue
                except Exception as e:
                    self.logger.error("Failed to expire slot", slot_id=slot.id, owner_id=slot.owner_id, error=str(e))
                    tick.record_error(slot.id, e)
                    continue

                tick.slots_processed += 1
                tick.amount_total += outcome.final_earnings
                owners.add(outcome.owner_id)

            if len(slots) < self.batch_size:
                break

        tick.owners_affected = len(owners)
        tick.end_time = self.clock()
        return tick

    async def expire_slot(self, slot: MiningSlot) -> ExpirationOutcome:
        """
        Deactivate one expired slot and credit what it still owes.

        Raises ConcurrencyConflictError, with nothing written, when the slot
        changed since it was read.
        """
        final = self.calculator.final_earnings(slot)
        watermark = max(slot.last_accrued_at, slot.expires_at)
        balance_result: Optional[BalanceUpdateResult] = None

        async with translate_store_errors("expire_slot"):
            async with transaction_scope(self.slot_store.session_maker) as db:
                await self.slot_store.update(
                    slot.id,
                    {
                        "is_active": False,
                        "accrued_earnings": ZERO,
                        "claimed_earnings": quantize_amount(slot.claimed_earnings + final),
                        "last_accrued_at": watermark,
                    },
                    slot.version,
                    session=db,
                )
                if final > 0:
                    balance_result = await self.balance_service.update_balance(
                        slot.owner_id,
                        self.currency,
                        final,
                        f"Final earnings for expired mining slot #{slot.id}",
                        ActivityLogType.SLOT_EXPIRED,
                        reference_id=str(slot.id),
                        session=db,
                    )

        self.logger.info(
            "Mining slot expired",
            slot_id=slot.id,
            owner_id=slot.owner_id,
            final_earnings=str(final)
        )

        if self.invalidator:
            await self.invalidator.invalidate(InvalidationTrigger.SLOT_EXPIRED, slot.owner_id, [slot.id])
        if self.notifier:
            await self.notifier.notify_slot_expired(
                slot.owner_id,
                slot.id,
                final,
                balance_result.new_balance if balance_result else None
            )
            if balance_result:
                await self.notifier.notify_balance_updated(
                    slot.owner_id,
                    self.currency,
                    balance_result.new_balance,
                    balance_result.change_amount,
                    ActivityLogType.SLOT_EXPIRED.value
                )

        return ExpirationOutcome(slot.id, slot.owner_id, final, balance_result)

    async def close_expired_slot(self, owner_id: str, slot_id: int) -> ExpirationOutcome:
        """
        Owner-triggered close of one expired slot ahead of the next tick.

        Raises SlotNotFoundError unless the slot belongs to ``owner_id``, is
        still active and has passed its expiry.
        """
        slots = await self.slot_store.find_eligible(SlotFilter(
            owner_id=owner_id,
            slot_ids=[slot_id],
            expired_at=self.clock(),
        ))
        if not slots:
            raise SlotNotFoundError(slot_id, owner_id)
        return await self.expire_slot(slots[0])

    async def reconcile(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """
        Compare every expired slot's bookkeeping with the ledger.

        - still active although a SLOT_EXPIRED credit exists: close it
          without crediting again;
        - ``claimed_earnings`` above the ledger total: credit the difference
          as RECONCILIATION;
        - ledger total above ``claimed_earnings`` on a closed slot: a double
          credit, reported in ``over_credited`` and logged for follow-up.
        """
        now = now or self.clock()
        report = ReconciliationReport()
        after_id: Optional[int] = None

        while True:
            slots = await self.slot_store.find_eligible(SlotFilter(
                active_only=False,
                expired_at=now,
                after_id=after_id,
                limit=self.batch_size,
            ))
            if not slots:
                break
            after_id = slots[-1].id
            report.checked += len(slots)

            reference_ids = [str(slot.id) for slot in slots]
            credited = await self.ledger.sum_by_reference(reference_ids)
            expiry_credits = await self.ledger.sum_by_reference(
                reference_ids, types=(ActivityLogType.SLOT_EXPIRED,)
            )

            for slot in slots:
                try:
                    await self._reconcile_slot(slot, credited[str(slot.id)], expiry_credits[str(slot.id)], report)
                except ConcurrencyConflictError:
                    report.conflicts += 1
                except Exception as e:
                    self.logger.error("Failed to reconcile slot", slot_id=slot.id, error=str(e))
                    report.errors.append(f"{slot.id}: {e}")

            if len(slots) < self.batch_size:
                break

        if report.closed_without_credit or report.credited or report.over_credited:
            self.logger.warning(
                "Reconciliation found discrepancies",
                checked=report.checked,
                closed=len(report.closed_without_credit),
                credited=len(report.credited),
                amount=str(report.amount_credited),
                over_credited=len(report.over_credited)
            )
        else:
            self.logger.info("Reconciliation found no discrepancies", checked=report.checked)
        return report

    async def _reconcile_slot(
        self,
        slot: MiningSlot,
        ledger_total: Decimal,
        expiry_credit: Decimal,
        report: ReconciliationReport,
    ) -> None:
        if slot.is_active and expiry_credit > 0:
            await self.slot_store.update(
                slot.id,
                {
                    "is_active": False,
                    "accrued_earnings": ZERO,
                    "claimed_earnings": max(slot.claimed_earnings, ledger_total),
                },
                slot.version,
            )
            report.closed_without_credit.append(slot.id)
            self.logger.warning(
                "Closed credited slot that was still active",
                slot_id=slot.id,
                owner_id=slot.owner_id,
                ledger_total=str(ledger_total)
            )
            if self.invalidator:
                await self.invalidator.invalidate(InvalidationTrigger.RECONCILED, slot.owner_id, [slot.id])
            return

        missing = quantize_amount(slot.claimed_earnings - ledger_total)
        if missing < 0 and not slot.is_active:
            report.over_credited[slot.id] = -missing
            self.logger.warning(
                "Ledger credits exceed slot earnings",
                slot_id=slot.id,
                owner_id=slot.owner_id,
                claimed_earnings=str(slot.claimed_earnings),
                ledger_total=str(ledger_total)
            )
            return
        if missing <= 0:
            return

        async with translate_store_errors("reconcile_slot"):
            async with transaction_scope(self.slot_store.session_maker) as db:
                # Guarded no-op write so a concurrent mutation aborts the credit
                await self.slot_store.update(
                    slot.id, {"claimed_earnings": slot.claimed_earnings}, slot.version, session=db
                )
                result = await self.balance_service.update_balance(
                    slot.owner_id,
                    self.currency,
                    missing,
                    f"Reconciliation credit for mining slot #{slot.id}",
                    ActivityLogType.RECONCILIATION,
                    reference_id=str(slot.id),
                    session=db,
                )

        report.credited[slot.id] = missing
        self.logger.warning(
            "Credited missing slot earnings",
            slot_id=slot.id,
            owner_id=slot.owner_id,
            amount=str(missing)
        )
        if self.invalidator:
            await self.invalidator.invalidate(InvalidationTrigger.RECONCILED, slot.owner_id, [slot.id])
        if self.notifier:
            await self.notifier.notify_balance_updated(
                slot.owner_id, self.currency, result.new_balance, missing, ActivityLogType.RECONCILIATION.value
            )

    async def count_stuck_slots(self, now: Optional[datetime] = None) -> int:
        """Active slots whose expiry passed more than ``grace_seconds`` ago."""
        now = now or self.clock()
        return await self.slot_store.count_eligible(
            SlotFilter(expired_at=now - timedelta(seconds=self.grace_seconds))
        )

    async def health_check(self) -> Dict[str, Any]:
        report = await super().health_check()
        try:
            stuck = await self.count_stuck_slots()
        except Exception as e:
            report["healthy"] = False
            report["stuck_slots_error"] = str(e)
            return report

        report["stuck_slots"] = stuck
        if stuck:
            report["healthy"] = False
            self.logger.warning(
                "Active slots past expiry beyond grace period",
                stuck_slots=stuck,
                grace_seconds=self.grace_seconds
            )
        return report
