"""
Test paid slot changes (extension, rate upgrade) and owner-triggered closing.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from mining_engine.core.exceptions import InsufficientBalanceError, SlotNotFoundError, ValidationError
from mining_engine.models.activity import ActivityLogType
from mining_engine.websocket.schemas import MessageType

from conftest import CURRENCY, T0


# Extension

async def test_extend_pushes_expiry_and_charges(make_slot, investment_service, slot_store, balance_service, ledger, sink, deposit, clock):
    slot = await make_slot()
    await deposit("alice", "5")
    clock.advance(days=3)

    extended = await investment_service.extend_slot("alice", slot.id)

    assert extended.expires_at == T0 + timedelta(days=14)
    assert extended.version == slot.version + 1
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("4")
    entries = await ledger.find_entries(owner_id="alice", log_type=ActivityLogType.SLOT_EXTENSION)
    assert [(e.reference_id, e.amount) for e in entries] == [(str(slot.id), Decimal("-1"))]
    assert sink.of_type(MessageType.SLOT_UPDATED, "alice")[0].data["change"] == "extended"


async def test_extended_slot_earns_over_the_longer_term(make_slot, investment_service, expiration, balance_service, deposit, clock):
    slot = await make_slot()
    await deposit("alice", "1")
    await investment_service.extend_slot("alice", slot.id)

    clock.advance(days=8)
    assert (await expiration.run_once()).slots_processed == 0

    clock.advance(days=7)
    tick = await expiration.run_once()

    # Two weeks at 30% of 100
    assert tick.amount_total == Decimal("60")
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("60")


async def test_extend_without_funds_changes_nothing(make_slot, investment_service, slot_store):
    slot = await make_slot()

    with pytest.raises(InsufficientBalanceError):
        await investment_service.extend_slot("alice", slot.id)

    stored = await slot_store.get(slot.id)
    assert stored.expires_at == slot.expires_at
    assert stored.version == slot.version


async def test_extend_rejects_open_ended_and_expired_slots(make_slot, investment_service, deposit, clock):
    open_ended = await make_slot(days=None)
    fixed = await make_slot()
    await deposit("alice", "5")

    with pytest.raises(ValidationError) as exc_info:
        await investment_service.extend_slot("alice", open_ended.id)
    assert exc_info.value.code == "SLOT_NOT_EXTENDABLE"

    clock.advance(days=8)
    with pytest.raises(ValidationError) as exc_info:
        await investment_service.extend_slot("alice", fixed.id)
    assert exc_info.value.code == "SLOT_EXPIRED"


async def test_extend_foreign_slot_is_not_found(make_slot, investment_service, deposit):
    slot = await make_slot(owner_id="bob")
    await deposit("alice", "5")

    with pytest.raises(SlotNotFoundError):
        await investment_service.extend_slot("alice", slot.id)


# Rate upgrade

async def test_upgrade_rebases_accrual_at_the_watermark(make_slot, investment_service, calculator, slot_store, balance_service, ledger, deposit, clock):
    slot = await make_slot()
    await deposit("alice", "20")
    clock.advance(days=3, hours=12)

    upgraded = await investment_service.upgrade_slot("alice", slot.id, "0.5")

    # Half a week at 30% accrued before the switch
    assert upgraded.weekly_rate == Decimal("0.5")
    assert upgraded.accrued_earnings == Decimal("15")
    assert upgraded.base_earnings == Decimal("15")
    assert upgraded.rate_since == clock()
    assert upgraded.last_accrued_at == clock()
    # 15 + half a week at 50%
    assert calculator.term_cap(upgraded) == Decimal("40")

    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("10")
    entries = await ledger.find_entries(owner_id="alice", log_type=ActivityLogType.SLOT_UPGRADE)
    assert [(e.reference_id, e.amount) for e in entries] == [(str(slot.id), Decimal("-10"))]


async def test_upgrade_after_claim_credits_exactly_the_term(make_slot, investment_service, claim_service, expiration, ledger, deposit, clock):
    slot = await make_slot()
    await deposit("alice", "10")
    clock.advance(days=1)
    await claim_service.claim("alice")
    clock.advance(days=2, hours=12)

    await investment_service.upgrade_slot("alice", slot.id, "0.6")
    clock.advance(days=5)
    tick = await expiration.run_once()

    assert tick.amount_total == Decimal("40.71428571")
    # 15 at 30% for half a week plus 30 at 60% for the rest
    assert (await ledger.sum_by_reference([str(slot.id)]))[str(slot.id)] == Decimal("45")


async def test_upgrade_must_raise_the_rate(make_slot, investment_service, deposit):
    slot = await make_slot()
    await deposit("alice", "20")

    for rate in ("0.3", "0.2", "1.5"):
        with pytest.raises(ValidationError) as exc_info:
            await investment_service.upgrade_slot("alice", slot.id, rate)
        assert exc_info.value.code == "INVALID_RATE_UPGRADE"


async def test_upgrade_drops_cached_snapshot(make_slot, investment_service, query_service, cache, sink, deposit, clock):
    slot = await make_slot()
    await deposit("alice", "20")
    await query_service.get_owner_snapshot("alice")
    clock.advance(hours=1)

    await investment_service.upgrade_slot("alice", slot.id, "0.4")

    assert await cache.get(cache.keys.owner_snapshot_key("alice")) is None
    snapshot = await query_service.get_owner_snapshot("alice")
    assert Decimal(snapshot["slots"][0]["weekly_rate"]) == Decimal("0.4")
    assert sink.of_type(MessageType.SLOT_UPDATED, "alice")[0].data["change"] == "upgraded"


# Owner-triggered close

async def test_close_expired_slot_credits_final_earnings(make_slot, expiration, slot_store, balance_service, sink, clock):
    slot = await make_slot()
    clock.advance(days=8)

    outcome = await expiration.close_expired_slot("alice", slot.id)

    assert outcome.final_earnings == Decimal("30")
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")
    assert not (await slot_store.get(slot.id)).is_active
    assert sink.of_type(MessageType.SLOT_EXPIRED, "alice")

    with pytest.raises(SlotNotFoundError):
        await expiration.close_expired_slot("alice", slot.id)
    assert (await expiration.run_once()).slots_found == 0
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")


async def test_close_requires_an_expired_slot_of_the_owner(make_slot, expiration, clock):
    running = await make_slot()
    foreign = await make_slot(owner_id="bob", start_at=T0 - timedelta(days=8))

    with pytest.raises(SlotNotFoundError):
        await expiration.close_expired_slot("alice", running.id)
    with pytest.raises(SlotNotFoundError):
        await expiration.close_expired_slot("alice", foreign.id)
