"""
Activity log - the append-only ledger written alongside every balance mutation.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Enum as SQLEnum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, Money, UTCDateTime
from mining_engine.utils.time import utc_now


class ActivityLogType(str, Enum):
    """Kinds of balance mutation recorded in the ledger."""
    CLAIM = "CLAIM"
    AUTO_CLAIM = "AUTO_CLAIM"
    SLOT_EXPIRED = "SLOT_EXPIRED"
    INVESTMENT = "INVESTMENT"
    SLOT_EXTENSION = "SLOT_EXTENSION"
    SLOT_UPGRADE = "SLOT_UPGRADE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    RECONCILIATION = "RECONCILIATION"
    ADJUSTMENT = "ADJUSTMENT"


# Ledger types that move slot earnings into a wallet
EARNINGS_CREDIT_TYPES = (
    ActivityLogType.CLAIM,
    ActivityLogType.AUTO_CLAIM,
    ActivityLogType.SLOT_EXPIRED,
    ActivityLogType.RECONCILIATION,
)


class ActivityLog(Base):
    """Immutable ledger entry. Rows are inserted, never updated."""

    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    type: Mapped[ActivityLogType] = mapped_column(
        SQLEnum(ActivityLogType, name="activitylogtype"),
        nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="Signed balance change"
    )

    currency: Mapped[str] = mapped_column(String(16), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    reference_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Slot id the entry concerns, if any"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        nullable=False
    )

    __table_args__ = (
        Index("ix_activity_logs_owner_created", "owner_id", "created_at"),
        Index("ix_activity_logs_reference", "reference_id"),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog(owner={self.owner_id}, type={self.type.value}, amount={self.amount})>"
