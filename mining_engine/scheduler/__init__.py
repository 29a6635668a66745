"""
Periodic processors driving the slot lifecycle.
"""

from .base import PeriodicProcessor, ProcessorStats, ProcessorStatus, TickStats
from .accumulator import EarningsAccumulator
from .expiration import ExpirationProcessor, ReconciliationReport
from .auto_claim import AutoClaimProcessor

__all__ = [
    "PeriodicProcessor",
    "ProcessorStats",
    "ProcessorStatus",
    "TickStats",
    "EarningsAccumulator",
    "ExpirationProcessor",
    "ReconciliationReport",
    "AutoClaimProcessor",
]
