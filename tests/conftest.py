"""
Shared fixtures: a SQLite database per test, a controllable clock, a
recording push sink and fully wired services.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from mining_engine.cache.cache_keys import CacheKeyBuilder
from mining_engine.cache.cache_service import CacheService, MemoryCacheTier
from mining_engine.cache.invalidation import CacheInvalidator
from mining_engine.core.database import DatabaseManager, create_session_maker
from mining_engine.models.activity import ActivityLogType
from mining_engine.scheduler.accumulator import EarningsAccumulator
from mining_engine.scheduler.auto_claim import AutoClaimProcessor
from mining_engine.scheduler.expiration import ExpirationProcessor
from mining_engine.services.accrual import AccrualCalculator
from mining_engine.services.balance_service import BalanceUpdateService
from mining_engine.services.claim_service import ClaimService
from mining_engine.services.earnings_query_service import EarningsQueryService
from mining_engine.services.investment_service import InvestmentService
from mining_engine.services.ledger import Ledger
from mining_engine.services.slot_store import SlotStore
from mining_engine.websocket.notification_service import RealtimeNotifier
from mining_engine.websocket.schemas import MessageType, WebSocketMessage


T0 = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)
CURRENCY = "NON"


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSink:
    """Push sink that keeps every message instead of sending it."""

    def __init__(self, reached: int = 1):
        self.messages: List[Tuple[str, WebSocketMessage]] = []
        self.reached = reached

    async def send_to_owner(self, owner_id: str, message: WebSocketMessage) -> int:
        self.messages.append((owner_id, message))
        return self.reached

    def of_type(self, message_type: MessageType, owner_id: Optional[str] = None) -> List[WebSocketMessage]:
        return [
            message for owner, message in self.messages
            if message.type == message_type and (owner_id is None or owner == owner_id)
        ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mining_engine.db'}")
    await DatabaseManager.create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return create_session_maker(db_engine)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return RealtimeNotifier(sink)


@pytest.fixture
def cache():
    return CacheService([MemoryCacheTier()], key_builder=CacheKeyBuilder(prefix="mining_engine", environment="test"))


@pytest.fixture
def invalidator(cache):
    return CacheInvalidator(cache)


@pytest.fixture
def calculator():
    return AccrualCalculator()


@pytest.fixture
def slot_store(session_maker):
    return SlotStore(session_maker)


@pytest.fixture
def ledger(session_maker):
    return Ledger(session_maker)


@pytest.fixture
def balance_service(session_maker, ledger):
    return BalanceUpdateService(session_maker, ledger=ledger)


@pytest.fixture
def claim_service(slot_store, balance_service, calculator, invalidator, notifier, clock):
    return ClaimService(
        slot_store,
        balance_service,
        calculator=calculator,
        invalidator=invalidator,
        notifier=notifier,
        min_claim_amount=Decimal("0.01"),
        currency=CURRENCY,
        clock=clock,
    )


@pytest.fixture
def query_service(slot_store, balance_service, calculator, cache, clock):
    return EarningsQueryService(
        slot_store,
        balance_service,
        calculator=calculator,
        cache=cache,
        recovery_threshold_seconds=300,
        currency=CURRENCY,
        clock=clock,
    )


@pytest.fixture
def investment_service(slot_store, balance_service, calculator, invalidator, notifier, clock):
    return InvestmentService(
        slot_store,
        balance_service,
        calculator=calculator,
        invalidator=invalidator,
        notifier=notifier,
        minimum_investment=Decimal("3.0"),
        weekly_rate=Decimal("0.3"),
        period_days=7,
        extension_cost=Decimal("1.0"),
        extension_days=7,
        upgrade_cost_ratio=Decimal("0.1"),
        currency=CURRENCY,
        clock=clock,
    )


@pytest.fixture
def accumulator(slot_store, calculator, invalidator, notifier, clock):
    return EarningsAccumulator(
        slot_store,
        calculator=calculator,
        invalidator=invalidator,
        notifier=notifier,
        interval_seconds=60,
        batch_size=50,
        recovery_threshold_seconds=300,
        clock=clock,
        error_backoff_seconds=0.01,
    )


@pytest.fixture
def expiration(slot_store, balance_service, calculator, invalidator, notifier, clock):
    return ExpirationProcessor(
        slot_store,
        balance_service,
        calculator=calculator,
        invalidator=invalidator,
        notifier=notifier,
        currency=CURRENCY,
        interval_seconds=60,
        batch_size=50,
        grace_seconds=600,
        clock=clock,
        error_backoff_seconds=0.01,
    )


@pytest.fixture
def auto_claim(slot_store, balance_service, calculator, invalidator, notifier, clock):
    return AutoClaimProcessor(
        slot_store,
        balance_service,
        calculator=calculator,
        invalidator=invalidator,
        notifier=notifier,
        currency=CURRENCY,
        interval_seconds=86400,
        age_seconds=7 * 86400,
        batch_size=50,
        clock=clock,
        error_backoff_seconds=0.01,
    )


@pytest.fixture
def make_slot(slot_store, clock):
    """Create a slot directly in the store (no wallet debit)."""

    async def _make_slot(
        owner_id: str = "alice",
        principal: str = "100",
        weekly_rate: str = "0.3",
        start_at: Optional[datetime] = None,
        days: Optional[int] = 7,
    ):
        start_at = start_at or clock()
        expires_at = start_at + timedelta(days=days) if days is not None else None
        return await slot_store.create_slot(owner_id, Decimal(principal), Decimal(weekly_rate), start_at, expires_at)

    return _make_slot


@pytest.fixture
def deposit(balance_service):
    async def _deposit(owner_id: str, amount: str):
        return await balance_service.update_balance(
            owner_id, CURRENCY, Decimal(amount), "Test deposit", ActivityLogType.DEPOSIT
        )

    return _deposit
