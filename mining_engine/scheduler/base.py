"""
Periodic processor base.

Each processor is an explicit instance owning one asyncio task. ``stop()``
halts future ticks and waits for a tick already in flight to finish; the
running batch is never cancelled. A tick that raises is logged, counted and
followed by a backoff pause, never by the loop dying.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from mining_engine.core.config import settings
from mining_engine.core.exceptions import SchedulerError
from mining_engine.utils.time import Clock, utc_now


logger = structlog.get_logger(__name__)


class ProcessorStatus(Enum):
    """Status of a periodic processor."""
    STOPPED = "stopped"
    WAITING = "waiting"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass
class TickStats:
    """Outcome of a single processor run."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    slots_found: int = 0
    slots_processed: int = 0
    slots_skipped: int = 0
    conflicts: int = 0
    failed: int = 0
    batch_fallbacks: int = 0
    amount_total: Decimal = Decimal("0")
    owners_affected: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total_processing_time(self) -> float:
        if not self.start_time or not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def record_error(self, slot_id: Any, error: Exception) -> None:
        self.failed += 1
        # Keep the first few for status reporting
        if len(self.errors) < 20:
            self.errors.append(f"{slot_id}: {error}")


@dataclass
class ProcessorStats:
    """Lifetime statistics of a processor."""
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    slots_processed_total: int = 0
    conflicts_total: int = 0
    failures_total: int = 0
    last_error: Optional[str] = None
    last_tick: Optional[TickStats] = None
    uptime_start: Optional[datetime] = None


class PeriodicProcessor(ABC):
    """Runs ``process(now)`` every ``interval_seconds`` until stopped."""

    name = "periodic_processor"

    def __init__(
        self,
        interval_seconds: float,
        clock: Clock = utc_now,
        error_backoff_seconds: Optional[float] = None,
        enabled: bool = True,
    ):
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.error_backoff_seconds = (
            error_backoff_seconds if error_backoff_seconds is not None else settings.error_backoff_seconds
        )
        self.enabled = enabled
        self.logger = logger.bind(service=self.name)

        self.status = ProcessorStatus.STOPPED
        self.stats = ProcessorStats()
        self._should_stop = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._run_lock = asyncio.Lock()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @abstractmethod
    async def process(self, now: datetime) -> TickStats:
        """One pass over the processor's window of slots."""

    async def initial_tick(self, now: datetime) -> TickStats:
        """First run after start(); processors override it to add startup work."""
        return await self.process(now)

    async def start(self) -> None:
        """Start the processor loop."""
        if not self.enabled:
            self.logger.info("Processor is disabled")
            return

        if self.is_running:
            self.logger.warning("Processor already running", current_status=self.status.value)
            return

        self._should_stop = False
        self._stop_event = asyncio.Event()
        self.stats.uptime_start = self.clock()
        self.status = ProcessorStatus.WAITING
        self._task = asyncio.create_task(self._scheduler_loop(), name=f"{self.name}-loop")

        self.logger.info("Processor started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop scheduling new ticks and wait for the current one to complete."""
        if self._task is None:
            self.status = ProcessorStatus.STOPPED
            return

        self.logger.info("Stopping processor", status=self.status.value)
        self._should_stop = True
        if self._stop_event is not None:
            self._stop_event.set()

        await self._task
        self._task = None
        self.status = ProcessorStatus.STOPPED
        self.logger.info("Processor stopped", total_runs=self.stats.total_runs)

    async def run_once(self) -> TickStats:
        """
        Run one tick immediately (manual trigger, tests).

        Raises SchedulerError when a tick is already in progress and
        propagates errors raised by the tick itself.
        """
        if self._run_lock.locked():
            raise SchedulerError(f"{self.name} is already processing")
        tick = await self._execute(self.process, propagate=True)
        return tick

    async def _execute(self, tick_fn, propagate: bool = False) -> Optional[TickStats]:
        async with self._run_lock:
            previous_status = self.status
            self.status = ProcessorStatus.PROCESSING
            self.stats.total_runs += 1
            now = self.clock()

            try:
                tick = await tick_fn(now)
            except Exception as e:
                self.stats.failed_runs += 1
                self.stats.last_error = str(e)
                self.status = ProcessorStatus.ERROR
                self.logger.error(
                    "Processor tick failed",
                    error=str(e),
                    total_runs=self.stats.total_runs,
                    failed_runs=self.stats.failed_runs
                )
                if propagate:
                    self.status = ProcessorStatus.WAITING if self.is_running else previous_status
                    raise
                return None

            tick.end_time = tick.end_time or self.clock()
            self.stats.last_run = now
            self.stats.last_tick = tick
            self.stats.successful_runs += 1
            self.stats.slots_processed_total += tick.slots_processed
            self.stats.conflicts_total += tick.conflicts
            self.stats.failures_total += tick.failed
            self.status = ProcessorStatus.WAITING if self.is_running else previous_status

            if tick.slots_found or tick.failed:
                self.logger.info(
                    "Processor tick completed",
                    found=tick.slots_found,
                    processed=tick.slots_processed,
                    skipped=tick.slots_skipped,
                    conflicts=tick.conflicts,
                    failed=tick.failed,
                    amount=str(tick.amount_total),
                    processing_time=f"{tick.total_processing_time:.3f}s"
                )
            return tick

    async def _sleep(self, seconds: float) -> bool:
        """Interruptible sleep; True when stop() was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _scheduler_loop(self) -> None:
        """Main processor loop."""
        self.logger.info("Processor loop started")
        tick_fn = self.initial_tick

        while not self._should_stop:
            tick = await self._execute(tick_fn)
            tick_fn = self.process

            delay = self.interval_seconds if tick is not None else self.error_backoff_seconds
            self.stats.next_run = self.clock() + timedelta(seconds=delay)
            if await self._sleep(delay):
                break

        self.logger.info("Processor loop stopped")

    async def health_check(self) -> Dict[str, Any]:
        """Health report; subclasses extend it with their own checks."""
        healthy = self.status != ProcessorStatus.ERROR
        uptime = (
            (self.clock() - self.stats.uptime_start).total_seconds()
            if self.stats.uptime_start and self.is_running else 0.0
        )
        return {
            "name": self.name,
            "healthy": healthy,
            "status": self.status.value,
            "enabled": self.enabled,
            "running": self.is_running,
            "uptime_seconds": uptime,
            "last_run": self.stats.last_run.isoformat() if self.stats.last_run else None,
            "last_error": self.stats.last_error,
        }

    def get_status(self) -> Dict[str, Any]:
        """Get current processor status."""
        return {
            "name": self.name,
            "status": self.status.value,
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "stats": asdict(self.stats),
            "next_run": self.stats.next_run.isoformat() if self.stats.next_run else None,
        }
