"""
Claim service - user-triggered transfer of slot earnings into the wallet.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog

from mining_engine.cache.invalidation import CacheInvalidator, InvalidationTrigger
from mining_engine.core.config import settings
from mining_engine.core.database import transaction_scope, translate_store_errors
from mining_engine.core.exceptions import NoEarningsToClaimError, SlotNotFoundError, ValidationError
from mining_engine.models.activity import ActivityLogType
from mining_engine.services.accrual import ZERO, AccrualCalculator, quantize_amount
from mining_engine.services.balance_service import BalanceUpdate, BalanceUpdateService
from mining_engine.services.slot_store import SlotFilter, SlotStore
from mining_engine.utils.time import Clock, utc_now
from mining_engine.websocket.notification_service import RealtimeNotifier


logger = structlog.get_logger(__name__)


@dataclass
class ClaimedSlot:
    slot_id: int
    amount: Decimal


@dataclass
class ClaimResult:
    owner_id: str
    currency: str
    claimed_amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    claimed_at: datetime
    slots: List[ClaimedSlot] = field(default_factory=list)


class ClaimService:
    """Accrues the owner's slots up to now and moves their earnings to the wallet."""

    def __init__(
        self,
        slot_store: SlotStore,
        balance_service: BalanceUpdateService,
        calculator: Optional[AccrualCalculator] = None,
        invalidator: Optional[CacheInvalidator] = None,
        notifier: Optional[RealtimeNotifier] = None,
        min_claim_amount: Decimal = settings.min_claim_amount,
        currency: str = settings.default_currency,
        clock: Clock = utc_now,
    ):
        self.slot_store = slot_store
        self.balance_service = balance_service
        self.calculator = calculator or AccrualCalculator()
        self.invalidator = invalidator
        self.notifier = notifier
        self.min_claim_amount = min_claim_amount
        self.currency = currency
        self.clock = clock
        self.logger = logger.bind(service="claim")

    async def claim(self, owner_id: str, slot_ids: Optional[Iterable[int]] = None) -> ClaimResult:
        """
        Claim the earnings of ``slot_ids`` (all active slots when omitted).

        Raises:
            SlotNotFoundError: a requested slot is unknown, inactive or foreign.
            NoEarningsToClaimError: the total is below the claim threshold.
            ConcurrencyConflictError: a slot changed meanwhile; nothing applied.
        """
        if not owner_id:
            raise ValidationError("Owner id is required")

        now = self.clock()
        requested = None
        if slot_ids is not None:
            requested = list(dict.fromkeys(int(slot_id) for slot_id in slot_ids))
            if not requested:
                raise ValidationError("No slots selected", {"owner_id": owner_id})

        slots = await self.slot_store.find_eligible(SlotFilter(owner_id=owner_id, slot_ids=requested))
        if requested is not None:
            found = {slot.id for slot in slots}
            missing = [slot_id for slot_id in requested if slot_id not in found]
            if missing:
                raise SlotNotFoundError(missing[0], owner_id)

        plans = []
        for slot in slots:
            window = self.calculator.accrue_window(slot, now)
            amount = quantize_amount(slot.accrued_earnings + window.amount)
            plans.append((slot, window, amount))

        total = quantize_amount(sum((amount for _, _, amount in plans), Decimal("0")))
        payable = [plan for plan in plans if plan[2] > 0]
        if not payable or total < self.min_claim_amount:
            raise NoEarningsToClaimError(owner_id, total, self.min_claim_amount)

        async with translate_store_errors("claim"):
            async with transaction_scope(self.slot_store.session_maker) as db:
                for slot, window, amount in payable:
                    await self.slot_store.update(
                        slot.id,
                        {
                            "accrued_earnings": ZERO,
                            "last_accrued_at": window.to_at,
                            "claimed_earnings": quantize_amount(slot.claimed_earnings + amount),
                        },
                        slot.version,
                        session=db,
                    )
                results = await self.balance_service.update_multiple_balances(
                    [
                        BalanceUpdate(
                            owner_id=owner_id,
                            currency=self.currency,
                            amount=amount,
                            description=f"Claimed earnings from mining slot #{slot.id}",
                            log_type=ActivityLogType.CLAIM,
                            reference_id=str(slot.id),
                        )
                        for slot, _, amount in payable
                    ],
                    session=db,
                )

        result = ClaimResult(
            owner_id=owner_id,
            currency=self.currency,
            claimed_amount=total,
            previous_balance=results[0].previous_balance,
            new_balance=results[-1].new_balance,
            claimed_at=now,
            slots=[ClaimedSlot(slot.id, amount) for slot, _, amount in payable],
        )

        self.logger.info(
            "Earnings claimed",
            owner_id=owner_id,
            amount=str(total),
            slots=len(payable),
            new_balance=str(result.new_balance)
        )

        claimed_ids = [claimed.slot_id for claimed in result.slots]
        if self.invalidator:
            await self.invalidator.invalidate(InvalidationTrigger.EARNINGS_CLAIMED, owner_id, claimed_ids)
        if self.notifier:
            await self.notifier.notify_earnings_claimed(owner_id, total, result.new_balance, claimed_ids)
            await self.notifier.notify_balance_updated(
                owner_id, self.currency, result.new_balance, total, ActivityLogType.CLAIM.value
            )

        return result
