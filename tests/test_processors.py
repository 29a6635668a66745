"""
Test the periodic processors driving the slot lifecycle.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from mining_engine.core.exceptions import ConcurrencyConflictError, SchedulerError
from mining_engine.models.activity import ActivityLogType
from mining_engine.scheduler.base import PeriodicProcessor, ProcessorStatus, TickStats
from mining_engine.services.slot_store import SlotFilter
from mining_engine.websocket.schemas import MessageType

from conftest import CURRENCY, T0


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# Accumulator

async def test_accumulator_parks_earnings_and_advances_watermark(make_slot, accumulator, slot_store, balance_service, sink, clock):
    slot = await make_slot()
    clock.advance(hours=1)

    tick = await accumulator.run_once()

    assert tick.slots_found == 1
    assert tick.slots_processed == 1
    assert tick.amount_total == Decimal("0.17857143")
    stored = await slot_store.get(slot.id)
    assert stored.accrued_earnings == Decimal("0.17857143")
    assert stored.last_accrued_at == clock()
    assert stored.version == 2
    # The wallet is only touched by claims, auto-claims and expiration
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("0")

    updates = sink.of_type(MessageType.SLOT_EARNINGS_UPDATE, "alice")
    assert updates[0].data["slots"][0]["slot_id"] == slot.id
    assert updates[0].data["total_accrued"] == "0.17857143"


async def test_accumulator_skips_expired_and_closed_slots(make_slot, accumulator, slot_store, clock):
    expired = await make_slot(start_at=clock() - timedelta(days=8))
    closed = await make_slot()
    await slot_store.update(closed.id, {"is_active": False}, closed.version)
    clock.advance(minutes=5)

    tick = await accumulator.run_once()

    assert tick.slots_found == 0
    assert (await slot_store.get(expired.id)).version == 1


async def test_accumulator_ticks_sum_to_single_tick(make_slot, accumulator, slot_store, clock):
    ticked = await make_slot(principal="77.7")
    for _ in range(200):
        clock.advance(seconds=61, microseconds=137)
        await accumulator.run_once()

    stored = await slot_store.get(ticked.id)
    single = accumulator.calculator.cumulative(stored, clock())
    assert abs(stored.accrued_earnings - single) <= Decimal("0.00000001")


async def test_accumulator_counts_conflicts(make_slot, accumulator, slot_store, clock, monkeypatch):
    slot = await make_slot()
    clock.advance(minutes=1)
    stale = await slot_store.find_eligible(SlotFilter(not_expired_at=clock(), watermark_before=clock()))
    await slot_store.update(slot.id, {"accrued_earnings": Decimal("0.001")}, slot.version)
    monkeypatch.setattr(slot_store, "find_eligible", AsyncMock(return_value=stale))

    tick = await accumulator.run_once()

    assert tick.conflicts == 1
    assert tick.slots_processed == 0


async def test_recovery_reports_lagging_slots(make_slot, accumulator, sink, clock):
    lagging = await make_slot()
    clock.advance(hours=2)

    tick = await accumulator.recover(clock())

    assert tick.slots_processed == 1
    assert accumulator.last_recovery["slots"] == 1
    recovered = sink.of_type(MessageType.EARNINGS_RECOVERED, "alice")
    assert recovered[0].data["slot_ids"] == [lagging.id]
    assert recovered[0].data["downtime_seconds"] == 7200.0


async def test_recovery_ignores_short_gaps(make_slot, accumulator, sink, clock):
    await make_slot()
    clock.advance(seconds=60)

    await accumulator.recover(clock())

    assert accumulator.last_recovery["slots"] == 0
    assert not sink.of_type(MessageType.EARNINGS_RECOVERED)


# Expiration

async def test_expiration_credits_full_period_and_closes_slot(make_slot, expiration, slot_store, balance_service, ledger, sink, clock):
    slot = await make_slot(principal="100", weekly_rate="0.3")
    clock.advance(days=7, minutes=1)

    tick = await expiration.run_once()

    assert tick.slots_processed == 1
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")
    stored = await slot_store.get(slot.id)
    assert not stored.is_active
    assert stored.claimed_earnings == Decimal("30")
    assert stored.accrued_earnings == Decimal("0")
    assert stored.last_accrued_at == slot.expires_at

    entries = await ledger.find_entries(log_type=ActivityLogType.SLOT_EXPIRED)
    assert [(e.reference_id, e.amount) for e in entries] == [(str(slot.id), Decimal("30"))]
    assert sink.of_type(MessageType.SLOT_EXPIRED, "alice")[0].data["final_earnings"] == "30.00000000"


async def test_expiration_is_idempotent(make_slot, expiration, balance_service, clock):
    await make_slot()
    clock.advance(days=8)

    await expiration.run_once()
    second = await expiration.run_once()

    assert second.slots_found == 0
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")


async def test_stale_expiration_credits_nothing(make_slot, expiration, slot_store, balance_service, clock):
    slot = await make_slot()
    clock.advance(days=8)
    stale = await slot_store.get(slot.id)
    await expiration.run_once()

    with pytest.raises(ConcurrencyConflictError):
        await expiration.expire_slot(stale)

    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")


async def test_lifetime_total_is_capped_across_claims_and_expiry(make_slot, accumulator, claim_service, expiration, balance_service, clock):
    await make_slot()
    clock.advance(days=3)
    await accumulator.run_once()
    await claim_service.claim("alice")
    clock.advance(days=2, hours=7)
    await accumulator.run_once()
    clock.advance(days=5)

    await expiration.run_once()

    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")


async def test_accumulator_then_expiration_matches_example(make_slot, accumulator, expiration, balance_service, clock):
    await make_slot()
    for _ in range(7 * 24):
        clock.advance(hours=1)
        await accumulator.run_once()
    clock.advance(minutes=1)

    await expiration.run_once()

    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")


async def test_health_reports_stuck_slots(make_slot, expiration, clock):
    await make_slot(start_at=T0 - timedelta(days=7, minutes=20))

    report = await expiration.health_check()
    assert report["stuck_slots"] == 1
    assert report["healthy"] is False

    await expiration.run_once()
    report = await expiration.health_check()
    assert report["stuck_slots"] == 0
    assert report["healthy"] is True


# Reconciliation

async def test_reconcile_closes_credited_active_slot(make_slot, expiration, slot_store, balance_service, clock):
    slot = await make_slot()
    clock.advance(days=8)
    await balance_service.update_balance(
        "alice", CURRENCY, Decimal("30"), "Final earnings", ActivityLogType.SLOT_EXPIRED, reference_id=str(slot.id)
    )

    report = await expiration.reconcile()

    assert report.closed_without_credit == [slot.id]
    assert report.amount_credited == Decimal("0")
    stored = await slot_store.get(slot.id)
    assert not stored.is_active
    assert stored.claimed_earnings == Decimal("30")
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")


async def test_reconcile_credits_missing_ledger_amount(make_slot, expiration, slot_store, balance_service, ledger, clock):
    slot = await make_slot()
    clock.advance(days=8)
    await slot_store.update(
        slot.id, {"is_active": False, "claimed_earnings": Decimal("30")}, slot.version
    )

    report = await expiration.reconcile()

    assert report.credited == {slot.id: Decimal("30.00000000")}
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")
    entries = await ledger.find_entries(log_type=ActivityLogType.RECONCILIATION)
    assert entries[0].reference_id == str(slot.id)

    again = await expiration.reconcile()
    assert again.credited == {}
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("30")


async def test_reconcile_leaves_consistent_slots_alone(make_slot, expiration, clock):
    await make_slot()
    clock.advance(days=8)
    await expiration.run_once()

    report = await expiration.reconcile()

    assert report.checked == 1
    assert report.closed_without_credit == []
    assert report.credited == {}
    assert report.over_credited == {}


async def test_reconcile_reports_double_credit(make_slot, expiration, balance_service, clock):
    slot = await make_slot()
    clock.advance(days=8)
    await expiration.run_once()
    await balance_service.update_balance(
        "alice", CURRENCY, Decimal("30"), "Duplicate final earnings", ActivityLogType.SLOT_EXPIRED,
        reference_id=str(slot.id)
    )

    report = await expiration.reconcile()

    assert report.over_credited == {slot.id: Decimal("30")}
    assert report.credited == {}
    # Reported only, the wallet is left as it is
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("60")


# Auto-claim

async def test_auto_claim_credits_old_open_ended_slots(make_slot, auto_claim, slot_store, balance_service, ledger, sink, clock):
    old = await make_slot(days=None, start_at=T0 - timedelta(days=8))
    young = await make_slot(days=None)

    tick = await auto_claim.run_once()

    assert tick.slots_processed == 1
    # 100 * 0.3 * 8 / 7
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("34.28571429")
    stored = await slot_store.get(old.id)
    assert stored.is_active
    assert stored.accrued_earnings == Decimal("0")
    assert stored.last_accrued_at == clock()
    assert (await slot_store.get(young.id)).version == 1

    entries = await ledger.find_entries(log_type=ActivityLogType.AUTO_CLAIM)
    assert [e.reference_id for e in entries] == [str(old.id)]
    assert sink.of_type(MessageType.EARNINGS_CLAIMED, "alice")[0].data["automatic"] is True


async def test_auto_claim_skips_expired_slots(make_slot, auto_claim, clock):
    await make_slot(start_at=T0 - timedelta(days=9))

    tick = await auto_claim.run_once()

    assert tick.slots_found == 0


async def test_auto_claim_groups_slots_per_owner(make_slot, auto_claim, balance_service, clock):
    await make_slot(owner_id="alice", days=None, start_at=T0 - timedelta(days=7))
    await make_slot(owner_id="alice", days=None, start_at=T0 - timedelta(days=7))
    await make_slot(owner_id="bob", days=None, start_at=T0 - timedelta(days=7))

    tick = await auto_claim.run_once()

    assert tick.slots_processed == 3
    assert tick.owners_affected == 2
    assert await balance_service.get_balance("alice", CURRENCY) == Decimal("60")
    assert await balance_service.get_balance("bob", CURRENCY) == Decimal("30")


# Processor lifecycle

class FailingProcessor(PeriodicProcessor):
    name = "failing"

    async def process(self, now):
        raise RuntimeError("boom")


class CountingProcessor(PeriodicProcessor):
    name = "counting"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.ticks = 0
        self.release = asyncio.Event()

    async def process(self, now):
        self.ticks += 1
        await self.release.wait()
        return TickStats(start_time=now)


async def test_start_runs_recovery_first_and_stop_waits(make_slot, accumulator, clock):
    await make_slot()
    clock.advance(hours=1)

    await accumulator.start()
    assert accumulator.is_running
    await wait_for(lambda: accumulator.stats.total_runs >= 1)
    await accumulator.stop()

    assert not accumulator.is_running
    assert accumulator.status == ProcessorStatus.STOPPED
    assert accumulator.last_recovery is not None
    assert accumulator.stats.successful_runs >= 1


async def test_stop_lets_in_flight_tick_finish(clock):
    processor = CountingProcessor(interval_seconds=60, clock=clock)
    await processor.start()
    await wait_for(lambda: processor.ticks == 1)

    stopping = asyncio.create_task(processor.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()

    processor.release.set()
    await stopping
    assert processor.stats.successful_runs == 1
    assert processor.status == ProcessorStatus.STOPPED


async def test_failing_tick_does_not_kill_the_loop(clock):
    processor = FailingProcessor(interval_seconds=60, clock=clock, error_backoff_seconds=0.01)

    await processor.start()
    await wait_for(lambda: processor.stats.failed_runs >= 2)

    assert processor.is_running
    health = await processor.health_check()
    assert health["healthy"] is False
    assert health["last_error"] == "boom"
    await processor.stop()


async def test_run_once_propagates_errors(clock):
    processor = FailingProcessor(interval_seconds=60, clock=clock)

    with pytest.raises(RuntimeError):
        await processor.run_once()

    assert processor.stats.failed_runs == 1


async def test_run_once_while_busy_is_rejected(clock):
    processor = CountingProcessor(interval_seconds=60, clock=clock)
    first = asyncio.create_task(processor.run_once())
    await wait_for(lambda: processor.ticks == 1)

    with pytest.raises(SchedulerError):
        await processor.run_once()

    processor.release.set()
    await first


async def test_disabled_processor_does_not_start(clock):
    processor = CountingProcessor(interval_seconds=60, clock=clock, enabled=False)

    await processor.start()

    assert not processor.is_running
    assert processor.get_status()["enabled"] is False
