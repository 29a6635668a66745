"""
Test earnings arithmetic and slot windows.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from mining_engine.core.exceptions import ValidationError
from mining_engine.models.slot import MiningSlot, SlotState
from mining_engine.services.accrual import (
    WEEK_MS,
    AccrualCalculator,
    earnings,
    elapsed_ms,
    lifetime_cap,
    slot_state,
)

from conftest import T0


def build_slot(principal="100", rate="0.3", days=7, **overrides) -> MiningSlot:
    values = dict(
        id=1,
        owner_id="alice",
        principal=Decimal(principal),
        weekly_rate=Decimal(rate),
        start_at=T0,
        expires_at=T0 + timedelta(days=days) if days is not None else None,
        last_accrued_at=T0,
        accrued_earnings=Decimal("0"),
        claimed_earnings=Decimal("0"),
        rate_since=T0,
        base_earnings=Decimal("0"),
        version=1,
        is_active=True,
    )
    values.update(overrides)
    return MiningSlot(**values)


def test_full_week_earns_the_weekly_rate():
    assert earnings(Decimal("100"), Decimal("0.3"), WEEK_MS) == Decimal("30.00000000")


def test_partial_period_is_quantized_half_up():
    one_hour = Decimal(3_600_000)
    # 100 * 0.3 / 168 = 0.178571428571...
    assert earnings("100", "0.3", one_hour) == Decimal("0.17857143")


def test_negative_or_zero_elapsed_earns_nothing():
    assert earnings("100", "0.3", -5000) == Decimal("0")
    assert earnings("100", "0.3", 0) == Decimal("0")


def test_zero_rate_earns_nothing():
    assert earnings("100", "0", WEEK_MS) == Decimal("0")


@pytest.mark.parametrize("principal, rate, elapsed", [
    ("abc", "0.3", 1000),
    ("100", "NaN", 1000),
    ("100", "0.3", "Infinity"),
    ("-1", "0.3", 1000),
    ("100", "1.5", 1000),
    (True, "0.3", 1000),
])
def test_malformed_inputs_are_rejected(principal, rate, elapsed):
    with pytest.raises(ValidationError):
        earnings(principal, rate, elapsed)


def test_elapsed_ms_is_signed():
    assert elapsed_ms(T0, T0 + timedelta(seconds=1, microseconds=500)) == Decimal("1000.5")
    assert elapsed_ms(T0 + timedelta(seconds=2), T0) == Decimal("-2000")


def test_lifetime_cap():
    assert lifetime_cap("100", "0.3") == Decimal("30.00000000")
    assert lifetime_cap("3", "0.3") == Decimal("0.90000000")


def test_window_is_clamped_to_expiry():
    calculator = AccrualCalculator()
    slot = build_slot()

    window = calculator.accrue_window(slot, T0 + timedelta(days=10))

    assert window.to_at == slot.expires_at
    assert window.amount == Decimal("30.00000000")


def test_window_respects_already_credited_earnings():
    calculator = AccrualCalculator()
    slot = build_slot(claimed_earnings=Decimal("29.5"), accrued_earnings=Decimal("0.4"))

    window = calculator.accrue_window(slot, T0 + timedelta(days=7))

    assert window.amount == Decimal("0.10000000")


def test_window_never_moves_watermark_backwards():
    calculator = AccrualCalculator()
    slot = build_slot(last_accrued_at=T0 + timedelta(hours=2))

    window = calculator.accrue_window(slot, T0 + timedelta(hours=1))

    assert window.is_empty
    assert window.to_at == slot.last_accrued_at
    assert window.amount == Decimal("0")


def test_open_ended_slot_has_no_cap():
    calculator = AccrualCalculator()
    slot = build_slot(days=None)

    window = calculator.accrue_window(slot, T0 + timedelta(days=14))

    assert window.amount == Decimal("60.00000000")


def test_many_small_ticks_equal_one_large_tick():
    calculator = AccrualCalculator()
    slot = build_slot(principal="123.45678901", rate="0.27")
    end = T0 + timedelta(days=7)

    now = T0
    step = 0
    while now < end:
        step += 1
        # Irregular tick lengths between 1 and 97 seconds
        now = min(now + timedelta(seconds=(step * 37) % 97 + 1, microseconds=step % 1000), end)
        window = calculator.accrue_window(slot, now)
        slot.accrued_earnings += window.amount
        slot.last_accrued_at = window.to_at

    single = calculator.cumulative(build_slot(principal="123.45678901", rate="0.27"), end)
    assert abs(slot.accrued_earnings - single) <= Decimal("0.00000001")
    assert slot.accrued_earnings <= lifetime_cap("123.45678901", "0.27")


def test_final_earnings_subtracts_claimed():
    calculator = AccrualCalculator()
    slot = build_slot(claimed_earnings=Decimal("12.5"))

    assert calculator.final_earnings(slot) == Decimal("17.50000000")


def test_final_earnings_never_negative():
    calculator = AccrualCalculator()
    slot = build_slot(claimed_earnings=Decimal("31"))

    assert calculator.final_earnings(slot) == Decimal("0")


def test_claimable_includes_parked_earnings():
    calculator = AccrualCalculator()
    slot = build_slot(accrued_earnings=Decimal("1.5"), last_accrued_at=T0 + timedelta(days=1))

    # Parked 1.5 plus cum(2d) - cum(1d) = 8.57142857 - 4.28571429
    assert calculator.claimable(slot, T0 + timedelta(days=2)) == Decimal("5.78571428")


def test_slot_states():
    slot = build_slot()
    assert slot_state(slot, T0 + timedelta(days=1)) == SlotState.ACTIVE
    assert slot_state(slot, T0 + timedelta(days=8)) == SlotState.EXPIRED_PENDING

    slot.is_active = False
    assert slot_state(slot, T0 + timedelta(days=8)) == SlotState.CLOSED


def test_paid_out_open_ended_slot_reports_auto_claimed():
    slot = build_slot(days=None)
    assert slot_state(slot, T0 + timedelta(days=8)) == SlotState.ACTIVE

    slot.claimed_earnings = Decimal("34.28571429")
    assert slot_state(slot, T0 + timedelta(days=8)) == SlotState.AUTO_CLAIMED
