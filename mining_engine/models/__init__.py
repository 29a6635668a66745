"""
Database models for the mining slots engine.
"""

from .base import Base, TimestampMixin, Money, UTCDateTime
from .slot import MiningSlot, SlotState
from .wallet import Wallet
from .activity import ActivityLog, ActivityLogType, EARNINGS_CREDIT_TYPES

__all__ = [
    "Base",
    "TimestampMixin",
    "Money",
    "UTCDateTime",
    "MiningSlot",
    "SlotState",
    "Wallet",
    "ActivityLog",
    "ActivityLogType",
    "EARNINGS_CREDIT_TYPES",
]
