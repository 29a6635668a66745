"""
Investment service - paid slot lifecycle operations.

Opening a slot, extending its term and upgrading its rate each debit the
owner's wallet and write the slot in one transaction. Slot writes are
version-guarded, so a concurrent accumulator tick or claim makes the whole
operation roll back with a ConcurrencyConflictError and nothing is charged.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from mining_engine.cache.invalidation import CacheInvalidator, InvalidationTrigger
from mining_engine.core.config import settings
from mining_engine.core.database import transaction_scope, translate_store_errors
from mining_engine.core.exceptions import SlotNotFoundError, ValidationError
from mining_engine.models.activity import ActivityLogType
from mining_engine.models.slot import MiningSlot
from mining_engine.services.accrual import AccrualCalculator, quantize_amount, to_decimal
from mining_engine.services.balance_service import BalanceUpdateResult, BalanceUpdateService
from mining_engine.services.slot_store import SlotFilter, SlotStore
from mining_engine.utils.time import Clock, utc_now
from mining_engine.websocket.notification_service import RealtimeNotifier


logger = structlog.get_logger(__name__)


class InvestmentService:
    """Debits the wallet and creates or changes the slot in one transaction."""

    def __init__(
        self,
        slot_store: SlotStore,
        balance_service: BalanceUpdateService,
        calculator: Optional[AccrualCalculator] = None,
        invalidator: Optional[CacheInvalidator] = None,
        notifier: Optional[RealtimeNotifier] = None,
        minimum_investment: Decimal = settings.minimum_slot_investment,
        weekly_rate: Decimal = settings.slot_weekly_rate,
        period_days: int = settings.slot_period_days,
        extension_cost: Decimal = settings.slot_extension_cost,
        extension_days: int = settings.slot_extension_days,
        upgrade_cost_ratio: Decimal = settings.slot_upgrade_cost_ratio,
        currency: str = settings.default_currency,
        clock: Clock = utc_now,
    ):
        self.slot_store = slot_store
        self.balance_service = balance_service
        self.calculator = calculator or AccrualCalculator()
        self.invalidator = invalidator
        self.notifier = notifier
        self.minimum_investment = minimum_investment
        self.weekly_rate = weekly_rate
        self.period_days = period_days
        self.extension_cost = extension_cost
        self.extension_days = extension_days
        self.upgrade_cost_ratio = upgrade_cost_ratio
        self.currency = currency
        self.clock = clock
        self.logger = logger.bind(service="investment")

    async def open_slot(
        self,
        owner_id: str,
        principal: Any,
        currency: Optional[str] = None,
        open_ended: bool = False,
    ) -> MiningSlot:
        """
        Open a slot of ``principal`` at the configured weekly rate.

        Fixed-expiry slots run for one rate period; open-ended slots have no
        expiry and are paid out by auto-claim.
        """
        if not owner_id:
            raise ValidationError("Owner id is required")

        principal = quantize_amount(to_decimal(principal, "principal"))
        if principal < self.minimum_investment:
            raise ValidationError(
                f"Minimum investment is {self.minimum_investment}",
                {"principal": str(principal), "minimum": str(self.minimum_investment)},
                code="BELOW_MINIMUM_INVESTMENT",
            )

        currency = currency or self.currency
        now = self.clock()
        expires_at = None if open_ended else now + timedelta(days=self.period_days)

        async with translate_store_errors("open_slot"):
            async with transaction_scope(self.slot_store.session_maker) as db:
                slot = await self.slot_store.create_slot(
                    owner_id, principal, self.weekly_rate, now, expires_at, session=db
                )
                result = await self.balance_service.update_balance(
                    owner_id,
                    currency,
                    -principal,
                    f"Investment in mining slot #{slot.id}",
                    ActivityLogType.INVESTMENT,
                    reference_id=str(slot.id),
                    session=db,
                )

        self.logger.info(
            "Mining slot opened",
            owner_id=owner_id,
            slot_id=slot.id,
            principal=str(principal),
            open_ended=open_ended
        )

        if self.invalidator:
            await self.invalidator.invalidate(InvalidationTrigger.SLOT_CREATED, owner_id, [slot.id])
        if self.notifier:
            await self.notifier.notify_slot_created(owner_id, slot.to_snapshot())
            await self.notifier.notify_balance_updated(
                owner_id, currency, result.new_balance, result.change_amount, ActivityLogType.INVESTMENT.value
            )
        return slot

    async def _running_slot(self, owner_id: str, slot_id: int) -> MiningSlot:
        """Active, unexpired slot of ``owner_id``."""
        slots = await self.slot_store.find_eligible(SlotFilter(owner_id=owner_id, slot_ids=[slot_id]))
        if not slots:
            raise SlotNotFoundError(slot_id, owner_id)
        slot = slots[0]
        if slot.is_expired(self.clock()):
            raise ValidationError(
                f"Mining slot #{slot_id} has expired",
                {"slot_id": slot_id, "expires_at": slot.expires_at.isoformat()},
                code="SLOT_EXPIRED",
            )
        return slot

    async def _charge_and_update(
        self,
        slot: MiningSlot,
        fields: Dict[str, Any],
        cost: Decimal,
        description: str,
        log_type: ActivityLogType,
    ) -> BalanceUpdateResult:
        async with translate_store_errors(log_type.value.lower()):
            async with transaction_scope(self.slot_store.session_maker) as db:
                await self.slot_store.update(slot.id, fields, slot.version, session=db)
                return await self.balance_service.update_balance(
                    slot.owner_id,
                    self.currency,
                    -cost,
                    description,
                    log_type,
                    reference_id=str(slot.id),
                    session=db,
                )

    async def _after_change(
        self,
        slot_id: int,
        owner_id: str,
        trigger: InvalidationTrigger,
        change: str,
        result: BalanceUpdateResult,
        log_type: ActivityLogType,
    ) -> MiningSlot:
        if self.invalidator:
            await self.invalidator.invalidate(trigger, owner_id, [slot_id])
        updated = await self.slot_store.get(slot_id)
        if self.notifier:
            await self.notifier.notify_slot_updated(owner_id, updated.to_snapshot(), change)
            await self.notifier.notify_balance_updated(
                owner_id, self.currency, result.new_balance, result.change_amount, log_type.value
            )
        return updated

    async def extend_slot(self, owner_id: str, slot_id: int) -> MiningSlot:
        """
        Push the expiry of a running fixed-expiry slot out by one extension period.

        Charges ``extension_cost``. The term cap grows with the term, so the
        slot keeps earning at its rate until the new expiry.
        """
        slot = await self._running_slot(owner_id, slot_id)
        if slot.is_open_ended:
            raise ValidationError(
                f"Mining slot #{slot_id} has no expiry to extend",
                {"slot_id": slot_id},
                code="SLOT_NOT_EXTENDABLE",
            )

        new_expiry = slot.expires_at + timedelta(days=self.extension_days)
        result = await self._charge_and_update(
            slot,
            {"expires_at": new_expiry},
            self.extension_cost,
            f"Extended mining slot #{slot.id} by {self.extension_days} days",
            ActivityLogType.SLOT_EXTENSION,
        )

        self.logger.info(
            "Mining slot extended",
            owner_id=owner_id,
            slot_id=slot.id,
            expires_at=new_expiry.isoformat(),
            cost=str(self.extension_cost)
        )
        return await self._after_change(
            slot.id, owner_id, InvalidationTrigger.SLOT_EXTENDED, "extended", result, ActivityLogType.SLOT_EXTENSION
        )

    async def upgrade_slot(self, owner_id: str, slot_id: int, new_rate: Any) -> MiningSlot:
        """
        Raise the weekly rate of a running slot.

        Charges ``upgrade_cost_ratio * principal``. Earnings up to now are
        accrued at the old rate first; the new rate applies from that
        watermark on, with everything earned before it carried in
        ``base_earnings``.
        """
        rate = to_decimal(new_rate, "weekly_rate")
        slot = await self._running_slot(owner_id, slot_id)
        if not (slot.weekly_rate < rate <= Decimal("1")):
            raise ValidationError(
                "New weekly rate must exceed the current rate and be at most 1",
                {"slot_id": slot_id, "current_rate": str(slot.weekly_rate), "new_rate": str(rate)},
                code="INVALID_RATE_UPGRADE",
            )

        window = self.calculator.accrue_window(slot, self.clock())
        accrued = quantize_amount(slot.accrued_earnings + window.amount)
        cost = quantize_amount(slot.principal * self.upgrade_cost_ratio)
        result = await self._charge_and_update(
            slot,
            {
                "accrued_earnings": accrued,
                "last_accrued_at": window.to_at,
                "base_earnings": quantize_amount(slot.claimed_earnings + accrued),
                "rate_since": window.to_at,
                "weekly_rate": rate,
            },
            cost,
            f"Upgraded mining slot #{slot.id} to {rate * 100:.1f}% weekly",
            ActivityLogType.SLOT_UPGRADE,
        )

        self.logger.info(
            "Mining slot upgraded",
            owner_id=owner_id,
            slot_id=slot.id,
            old_rate=str(slot.weekly_rate),
            new_rate=str(rate),
            cost=str(cost)
        )
        return await self._after_change(
            slot.id, owner_id, InvalidationTrigger.SLOT_UPGRADED, "upgraded", result, ActivityLogType.SLOT_UPGRADE
        )
