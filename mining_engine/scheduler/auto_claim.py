"""
Auto-claim processor.

Moves the earnings of long-running slots into their owners' wallets without
closing the slots. One transaction per owner, one ledger entry per slot.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from mining_engine.cache.invalidation import CacheInvalidator, InvalidationTrigger
from mining_engine.core.config import settings
from mining_engine.core.database import transaction_scope, translate_store_errors
from mining_engine.core.exceptions import ConcurrencyConflictError
from mining_engine.models.activity import ActivityLogType
from mining_engine.models.slot import MiningSlot
from mining_engine.services.accrual import ZERO, AccrualCalculator, AccrualWindow, quantize_amount
from mining_engine.services.balance_service import BalanceUpdate, BalanceUpdateService
from mining_engine.services.slot_store import SlotFilter, SlotStore
from mining_engine.utils.time import Clock, utc_now
from mining_engine.websocket.notification_service import RealtimeNotifier
from .base import PeriodicProcessor, TickStats


@dataclass
class SlotClaimPlan:
    slot: MiningSlot
    window: AccrualWindow
    amount: Decimal


@dataclass
class OwnerAutoClaim:
    owner_id: str
    amount: Decimal = Decimal("0")
    slot_ids: List[int] = field(default_factory=list)
    new_balance: Optional[Decimal] = None


class AutoClaimProcessor(PeriodicProcessor):
    """Credits parked and pending earnings of slots older than ``age_seconds``."""

    name = "auto_claim"

    def __init__(
        self,
        slot_store: SlotStore,
        balance_service: BalanceUpdateService,
        calculator: Optional[AccrualCalculator] = None,
        invalidator: Optional[CacheInvalidator] = None,
        notifier: Optional[RealtimeNotifier] = None,
        currency: str = settings.default_currency,
        interval_seconds: float = settings.auto_claim_interval,
        age_seconds: float = settings.auto_claim_age_seconds,
        batch_size: int = settings.processor_batch_size,
        clock: Clock = utc_now,
        **kwargs: Any,
    ):
        super().__init__(interval_seconds, clock=clock, **kwargs)
        self.slot_store = slot_store
        self.balance_service = balance_service
        self.calculator = calculator or AccrualCalculator()
        self.invalidator = invalidator
        self.notifier = notifier
        self.currency = currency
        self.age_seconds = age_seconds
        self.batch_size = batch_size

    async def process(self, now: datetime) -> TickStats:
        tick = TickStats(start_time=now)
        cutoff = now - timedelta(seconds=self.age_seconds)
        after_id: Optional[int] = None

        while True:
            slots = await self.slot_store.find_eligible(SlotFilter(
                not_expired_at=now,
                started_before=cutoff,
                watermark_before=now,
                after_id=after_id,
                limit=self.batch_size,
            ))
            if not slots:
                break
            after_id = slots[-1].id
            tick.slots_found += len(slots)

            by_owner: Dict[str, List[MiningSlot]] = defaultdict(list)
            for slot in slots:
                by_owner[slot.owner_id].append(slot)

            for owner_id, owner_slots in by_owner.items():
                try:
                    outcome = await self.claim_owner(owner_id, owner_slots, now)
                except ConcurrencyConflictError as e:
                    self.logger.info(
                        "Owner slots changed concurrently, auto-claim retried next run",
                        owner_id=owner_id,
                        slot_id=e.details.get("slot_id")
                    )
                    tick.conflicts += len(owner_slots)
                    continue
                except Exception as e:
                    self.logger.error("Auto-claim failed", owner_id=owner_id, error=str(e))
                    tick.record_error(owner_id, e)
                    continue

                tick.slots_processed += len(outcome.slot_ids)
                tick.slots_skipped += len(owner_slots) - len(outcome.slot_ids)
                tick.amount_total += outcome.amount
                if outcome.slot_ids:
                    tick.owners_affected += 1

            if len(slots) < self.batch_size:
                break

        tick.end_time = self.clock()
        return tick

    async def claim_owner(self, owner_id: str, slots: List[MiningSlot], now: datetime) -> OwnerAutoClaim:
        """Credit every slot of one owner in a single transaction."""
        outcome = OwnerAutoClaim(owner_id=owner_id)
        plans: List[SlotClaimPlan] = []
        for slot in slots:
            window = self.calculator.accrue_window(slot, now)
            amount = quantize_amount(slot.accrued_earnings + window.amount)
            if amount > 0:
                plans.append(SlotClaimPlan(slot, window, amount))

        if not plans:
            return outcome

        async with translate_store_errors("auto_claim"):
            async with transaction_scope(self.slot_store.session_maker) as db:
                for plan in plans:
                    await self.slot_store.update(
                        plan.slot.id,
                        {
                            "accrued_earnings": ZERO,
                            "last_accrued_at": plan.window.to_at,
                            "claimed_earnings": quantize_amount(plan.slot.claimed_earnings + plan.amount),
                        },
                        plan.slot.version,
                        session=db,
                    )
                results = await self.balance_service.update_multiple_balances(
                    [
                        BalanceUpdate(
                            owner_id=owner_id,
                            currency=self.currency,
                            amount=plan.amount,
                            description=f"Auto-claim from mining slot #{plan.slot.id}",
                            log_type=ActivityLogType.AUTO_CLAIM,
                            reference_id=str(plan.slot.id),
                        )
                        for plan in plans
                    ],
                    session=db,
                )

        outcome.slot_ids = [plan.slot.id for plan in plans]
        outcome.amount = sum((plan.amount for plan in plans), Decimal("0"))
        outcome.new_balance = results[-1].new_balance

        self.logger.info(
            "Auto-claimed slot earnings",
            owner_id=owner_id,
            slots=len(plans),
            amount=str(outcome.amount)
        )

        if self.invalidator:
            await self.invalidator.invalidate(InvalidationTrigger.AUTO_CLAIMED, owner_id, outcome.slot_ids)
        if self.notifier:
            await self.notifier.notify_earnings_claimed(
                owner_id, outcome.amount, outcome.new_balance, outcome.slot_ids, automatic=True
            )
            await self.notifier.notify_balance_updated(
                owner_id, self.currency, outcome.new_balance, outcome.amount, ActivityLogType.AUTO_CLAIM.value
            )
        return outcome
