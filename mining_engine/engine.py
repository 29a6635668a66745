"""
Engine assembly: builds stores, services and processors around one session maker.
"""

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mining_engine.cache.cache_service import CacheService, build_cache_service
from mining_engine.cache.invalidation import CacheInvalidator
from mining_engine.cache.redis_client import RedisClient
from mining_engine.core.config import Settings, settings
from mining_engine.core.database import DatabaseManager, close_database, init_database
from mining_engine.scheduler.accumulator import EarningsAccumulator
from mining_engine.scheduler.auto_claim import AutoClaimProcessor
from mining_engine.scheduler.base import PeriodicProcessor
from mining_engine.scheduler.expiration import ExpirationProcessor
from mining_engine.services.accrual import AccrualCalculator
from mining_engine.services.balance_service import BalanceUpdateService
from mining_engine.services.claim_service import ClaimService
from mining_engine.services.earnings_query_service import EarningsQueryService
from mining_engine.services.investment_service import InvestmentService
from mining_engine.services.ledger import Ledger
from mining_engine.services.slot_store import SlotStore
from mining_engine.utils.time import Clock, utc_now
from mining_engine.websocket.connection_manager import ConnectionManager
from mining_engine.websocket.notification_service import RealtimeNotifier


logger = structlog.get_logger(__name__)


class MiningEngine:
    """Owns every component of the engine and their lifecycle."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: Settings = settings,
        cache: Optional[CacheService] = None,
        connection_manager: Optional[ConnectionManager] = None,
        redis_client: Optional[RedisClient] = None,
        clock: Clock = utc_now,
    ):
        self.session_maker = session_maker
        self.config = config
        self.cache = cache
        self.connection_manager = connection_manager or ConnectionManager(config.websocket_ping_interval)
        self.redis_client = redis_client
        self.clock = clock

        self.calculator = AccrualCalculator()
        self.slot_store = SlotStore(session_maker)
        self.ledger = Ledger(session_maker)
        self.balance_service = BalanceUpdateService(session_maker, ledger=self.ledger)
        self.invalidator = CacheInvalidator(cache) if cache is not None else None
        self.notifier = RealtimeNotifier(self.connection_manager, enabled=config.websocket_enabled)

        self.claim_service = ClaimService(
            self.slot_store,
            self.balance_service,
            calculator=self.calculator,
            invalidator=self.invalidator,
            notifier=self.notifier,
            min_claim_amount=config.min_claim_amount,
            currency=config.default_currency,
            clock=clock,
        )
        self.query_service = EarningsQueryService(
            self.slot_store,
            self.balance_service,
            calculator=self.calculator,
            cache=cache,
            recovery_threshold_seconds=config.recovery_threshold_seconds,
            currency=config.default_currency,
            clock=clock,
        )
        self.investment_service = InvestmentService(
            self.slot_store,
            self.balance_service,
            calculator=self.calculator,
            invalidator=self.invalidator,
            notifier=self.notifier,
            minimum_investment=config.minimum_slot_investment,
            weekly_rate=config.slot_weekly_rate,
            period_days=config.slot_period_days,
            extension_cost=config.slot_extension_cost,
            extension_days=config.slot_extension_days,
            upgrade_cost_ratio=config.slot_upgrade_cost_ratio,
            currency=config.default_currency,
            clock=clock,
        )

        processor_options = {
            "clock": clock,
            "error_backoff_seconds": config.error_backoff_seconds,
            "enabled": config.scheduler_enabled,
        }
        self.accumulator = EarningsAccumulator(
            self.slot_store,
            calculator=self.calculator,
            invalidator=self.invalidator,
            notifier=self.notifier,
            interval_seconds=config.accumulator_interval,
            batch_size=config.processor_batch_size,
            recovery_threshold_seconds=config.recovery_threshold_seconds,
            **processor_options,
        )
        self.expiration = ExpirationProcessor(
            self.slot_store,
            self.balance_service,
            calculator=self.calculator,
            invalidator=self.invalidator,
            notifier=self.notifier,
            currency=config.default_currency,
            interval_seconds=config.expiration_interval,
            batch_size=config.processor_batch_size,
            grace_seconds=config.expiration_grace_seconds,
            **processor_options,
        )
        self.auto_claim = AutoClaimProcessor(
            self.slot_store,
            self.balance_service,
            calculator=self.calculator,
            invalidator=self.invalidator,
            notifier=self.notifier,
            currency=config.default_currency,
            interval_seconds=config.auto_claim_interval,
            age_seconds=config.auto_claim_age_seconds,
            batch_size=config.processor_batch_size,
            **processor_options,
        )

    @property
    def processors(self) -> List[PeriodicProcessor]:
        return [self.accumulator, self.expiration, self.auto_claim]

    @classmethod
    async def create(cls, config: Settings = settings, create_tables: bool = False) -> "MiningEngine":
        """
        Connect the database and cache and assemble the engine.

        Redis is optional: when it cannot be reached the engine runs with the
        in-process cache tier only.
        """
        session_maker = await init_database(config.database_url)
        if create_tables:
            await DatabaseManager.create_tables()

        redis_client: Optional[RedisClient] = None
        cache: Optional[CacheService] = None
        if config.cache_enabled:
            redis_client = RedisClient(config.redis_url)
            try:
                await redis_client.connect()
            except Exception as e:
                logger.warning("Redis unavailable, using memory cache only", error=str(e))
                redis_client = None
            cache = build_cache_service(redis_client, config)

        return cls(session_maker, config=config, cache=cache, redis_client=redis_client)

    async def start(self) -> None:
        """Start every enabled processor."""
        if not self.config.scheduler_enabled:
            logger.info("Scheduler disabled, processors not started")
            return
        for processor in self.processors:
            await processor.start()
        logger.info("Mining engine started", processors=[p.name for p in self.processors])

    async def stop(self) -> None:
        """Stop processors, letting in-flight ticks finish."""
        for processor in self.processors:
            try:
                await processor.stop()
            except Exception as e:
                logger.error("Error stopping processor", processor=processor.name, error=str(e))

    async def close(self) -> None:
        """Stop processors and release connections."""
        await self.stop()
        await self.connection_manager.close_all()
        if self.redis_client is not None:
            await self.redis_client.disconnect()
        await close_database()
        logger.info("Mining engine closed")

    async def health_check(self) -> Dict[str, Any]:
        database_ok = await DatabaseManager.health_check(self.session_maker)
        processors = {p.name: await p.health_check() for p in self.processors}
        report: Dict[str, Any] = {
            "healthy": database_ok and all(p["healthy"] for p in processors.values()),
            "database": "healthy" if database_ok else "unhealthy",
            "processors": processors,
            "notifications": self.notifier.get_stats(),
            "connections": self.connection_manager.get_connection_stats(),
        }
        if self.cache is not None:
            report["cache"] = self.cache.get_cache_stats()
        if self.redis_client is not None:
            report["redis"] = await self.redis_client.health_check()
        return report
