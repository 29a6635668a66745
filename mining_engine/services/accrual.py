"""
Accrual calculator - time-proportional earnings on a slot's principal.

All arithmetic is Decimal and every amount is quantized to 8 places. Window
deltas are computed as the difference of quantized cumulative earnings since
``start_at``, so splitting a span into many accumulator ticks sums to exactly
the amount a single tick over the whole span would produce.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from mining_engine.core.exceptions import ValidationError
from mining_engine.models.slot import MiningSlot, SlotState
from mining_engine.utils.time import ensure_utc

WEEK = timedelta(days=7)
WEEK_MS = Decimal(WEEK // timedelta(milliseconds=1))
EARNINGS_QUANTUM = Decimal("0.00000001")
ZERO = Decimal("0").quantize(EARNINGS_QUANTUM)


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """Coerce to a finite Decimal or raise ValidationError."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: {value!r}", {"field": field})
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid {field}: {value!r}", {"field": field})
    if not result.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}", {"field": field})
    return result


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(EARNINGS_QUANTUM, rounding=ROUND_HALF_UP)


def elapsed_ms(start: datetime, end: datetime) -> Decimal:
    """Milliseconds from ``start`` to ``end``; negative when the clock went backwards."""
    delta = ensure_utc(end) - ensure_utc(start)
    return Decimal(delta // timedelta(microseconds=1)) / Decimal(1000)


def earnings(principal: Any, weekly_rate: Any, elapsed: Any) -> Decimal:
    """
    Earnings owed for ``elapsed`` milliseconds.

    ``principal * weekly_rate * elapsed / week``, zero for negative elapsed
    time (clock skew), floored at zero and quantized to 8 places.
    """
    principal = to_decimal(principal, "principal")
    weekly_rate = to_decimal(weekly_rate, "weekly_rate")
    elapsed = to_decimal(elapsed, "elapsed_ms")

    if principal < 0:
        raise ValidationError("Principal must not be negative", {"principal": str(principal)})
    if not (Decimal("0") <= weekly_rate <= Decimal("1")):
        raise ValidationError("Weekly rate must be within [0, 1]", {"weekly_rate": str(weekly_rate)})

    if elapsed <= 0:
        return ZERO

    raw = principal * weekly_rate * elapsed / WEEK_MS
    if raw <= 0:
        return ZERO
    return quantize_amount(raw)


def lifetime_cap(principal: Any, weekly_rate: Any) -> Decimal:
    return quantize_amount(to_decimal(principal, "principal") * to_decimal(weekly_rate, "weekly_rate"))


@dataclass(frozen=True)
class AccrualWindow:
    """Earnings owed for ``[from_at, to_at]``; ``to_at`` becomes the new watermark."""
    from_at: datetime
    to_at: datetime
    amount: Decimal

    @property
    def is_empty(self) -> bool:
        return self.to_at <= self.from_at

    @property
    def elapsed_seconds(self) -> float:
        return (self.to_at - self.from_at) / timedelta(seconds=1)


class AccrualCalculator:
    """Slot-aware accrual helpers built on :func:`earnings`."""

    def term_cap(self, slot: MiningSlot) -> Decimal:
        """
        Maximum earnings a fixed-expiry slot may ever credit.

        ``principal * weekly_rate`` for a plain one-week slot; extensions and
        rate upgrades move it to whatever the paid term earns up to expiry.
        """
        return quantize_amount(
            slot.base_earnings
            + earnings(slot.principal, slot.weekly_rate, elapsed_ms(slot.rate_since, slot.expires_at))
        )

    def cumulative(self, slot: MiningSlot, at: datetime) -> Decimal:
        """
        Total earnings from ``start_at`` to ``at``, bounded by expiry and the term cap.

        Earnings before ``rate_since`` are carried in ``base_earnings``; the
        current rate applies from ``rate_since`` on.
        """
        end = self.window_end(slot, at)
        total = quantize_amount(
            slot.base_earnings
            + earnings(slot.principal, slot.weekly_rate, elapsed_ms(slot.rate_since, end))
        )
        if slot.expires_at is not None:
            total = min(total, self.term_cap(slot))
        return total

    def window_end(self, slot: MiningSlot, now: datetime) -> datetime:
        now = ensure_utc(now)
        if slot.expires_at is not None and now > slot.expires_at:
            return slot.expires_at
        return now

    def accrue_window(self, slot: MiningSlot, now: datetime) -> AccrualWindow:
        """
        Delta owed since the watermark.

        The returned ``to_at`` never precedes the current watermark, so
        advancing to it keeps the watermark monotonic.
        """
        start = slot.last_accrued_at
        end = self.window_end(slot, now)
        if end <= start:
            return AccrualWindow(from_at=start, to_at=start, amount=ZERO)

        amount = self.cumulative(slot, end) - self.cumulative(slot, start)
        if slot.expires_at is not None:
            headroom = self.term_cap(slot) - slot.claimed_earnings - slot.accrued_earnings
            amount = min(amount, max(headroom, ZERO))
        return AccrualWindow(from_at=start, to_at=end, amount=max(quantize_amount(amount), ZERO))

    def claimable(self, slot: MiningSlot, now: datetime) -> Decimal:
        """Parked earnings plus whatever accrued since the watermark."""
        return quantize_amount(slot.accrued_earnings + self.accrue_window(slot, now).amount)

    def final_earnings(self, slot: MiningSlot, now: Optional[datetime] = None) -> Decimal:
        """
        Amount still owed when a fixed-expiry slot closes.

        Earnings over the whole term, capped by :meth:`term_cap`, minus what
        was already credited to the wallet.
        """
        at = slot.expires_at if slot.expires_at is not None else ensure_utc(now)
        owed = self.cumulative(slot, at) - slot.claimed_earnings
        return max(quantize_amount(owed), ZERO)


def slot_state(slot: MiningSlot, now: datetime) -> SlotState:
    """Lifecycle state of ``slot`` at ``now``."""
    return slot.state(ensure_utc(now))
