"""
Test user-triggered claims.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pydantic
import pytest

from mining_engine.core.config import Settings
from mining_engine.core.exceptions import (
    ConcurrencyConflictError,
    NoEarningsToClaimError,
    SlotNotFoundError,
    ValidationError,
)
from mining_engine.models.activity import ActivityLogType
from mining_engine.services.claim_service import ClaimService
from mining_engine.services.slot_store import SlotFilter
from mining_engine.websocket.schemas import MessageType

from conftest import CURRENCY


async def test_claim_accrues_up_to_now_and_credits_wallet(make_slot, claim_service, slot_store, balance_service, ledger, sink, clock):
    slot = await make_slot()
    clock.advance(days=1)

    result = await claim_service.claim("alice")

    # 100 * 0.3 / 7
    assert result.claimed_amount == Decimal("4.28571429")
    assert result.previous_balance == Decimal("0")
    assert result.new_balance == Decimal("4.28571429")
    assert [s.slot_id for s in result.slots] == [slot.id]
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("4.28571429")

    stored = await slot_store.get(slot.id)
    assert stored.accrued_earnings == Decimal("0")
    assert stored.claimed_earnings == Decimal("4.28571429")
    assert stored.last_accrued_at == clock()
    assert stored.version == 2

    entries = await ledger.find_entries(owner_id="alice", log_type=ActivityLogType.CLAIM)
    assert [(e.reference_id, e.amount) for e in entries] == [(str(slot.id), Decimal("4.28571429"))]

    claimed = sink.of_type(MessageType.EARNINGS_CLAIMED, "alice")
    assert len(claimed) == 1
    assert claimed[0].data["amount"] == "4.28571429"
    assert claimed[0].data["automatic"] is False
    assert sink.of_type(MessageType.BALANCE_UPDATE, "alice")


async def test_claim_includes_parked_earnings(make_slot, claim_service, accumulator, clock):
    await make_slot()
    clock.advance(hours=12)
    await accumulator.run_once()
    clock.advance(hours=12)

    result = await claim_service.claim("alice")

    assert result.claimed_amount == Decimal("4.28571429")


async def test_claim_below_threshold_changes_nothing(make_slot, claim_service, slot_store, balance_service, sink, clock):
    slot = await make_slot()
    clock.advance(seconds=1)

    with pytest.raises(NoEarningsToClaimError) as exc_info:
        await claim_service.claim("alice")

    assert exc_info.value.code == "NO_EARNINGS_TO_CLAIM"
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("0")
    stored = await slot_store.get(slot.id)
    assert stored.version == 1
    assert stored.last_accrued_at == slot.last_accrued_at
    assert not sink.messages


async def test_claim_selected_slots_only(make_slot, claim_service, slot_store, clock):
    first = await make_slot()
    second = await make_slot()
    clock.advance(days=2)

    result = await claim_service.claim("alice", [second.id])

    assert [s.slot_id for s in result.slots] == [second.id]
    assert (await slot_store.get(first.id)).version == 1


async def test_claim_of_foreign_slot_is_not_found(make_slot, claim_service, balance_service, clock):
    await make_slot(owner_id="alice")
    foreign = await make_slot(owner_id="bob")
    clock.advance(days=1)

    with pytest.raises(SlotNotFoundError):
        await claim_service.claim("alice", [foreign.id])

    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("0")


async def test_claim_with_empty_selection_is_invalid(claim_service):
    with pytest.raises(ValidationError):
        await claim_service.claim("alice", [])


async def test_lost_race_rolls_back_the_whole_claim(make_slot, claim_service, slot_store, balance_service, clock, monkeypatch):
    first = await make_slot()
    second = await make_slot()
    clock.advance(days=1)
    stale = await slot_store.find_eligible(SlotFilter(owner_id="alice"))

    # Another writer touches the second slot after the claim read it
    await slot_store.update(second.id, {"accrued_earnings": Decimal("1")}, second.version)
    monkeypatch.setattr(slot_store, "find_eligible", AsyncMock(return_value=stale))

    with pytest.raises(ConcurrencyConflictError):
        await claim_service.claim("alice")

    monkeypatch.undo()
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("0")
    assert (await slot_store.get(first.id)).version == 1
    assert (await slot_store.get(first.id)).claimed_earnings == Decimal("0")


async def test_claim_after_expiry_stops_at_expiry(make_slot, claim_service, slot_store, clock):
    slot = await make_slot()
    clock.advance(days=9)

    result = await claim_service.claim("alice")

    assert result.claimed_amount == Decimal("30.00000000")
    assert (await slot_store.get(slot.id)).last_accrued_at == slot.expires_at


async def test_zero_threshold_with_nothing_payable_is_rejected(make_slot, slot_store, balance_service, clock):
    await make_slot()
    service = ClaimService(slot_store, balance_service, min_claim_amount=Decimal("0"), currency=CURRENCY, clock=clock)

    with pytest.raises(NoEarningsToClaimError):
        await service.claim("alice")


def test_claim_threshold_must_be_positive():
    with pytest.raises(pydantic.ValidationError):
        Settings(min_claim_amount=Decimal("0"))
