"""
MiningSlot model - a time-boxed investment position earning yield on its principal.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, Money, TimestampMixin, UTCDateTime


class SlotState(str, Enum):
    """Lifecycle state derived from a slot row and the current time."""
    ACTIVE = "active"
    AUTO_CLAIMED = "auto_claimed"
    EXPIRED_PENDING = "expired_pending"
    CLOSED = "closed"


class MiningSlot(Base, TimestampMixin):
    """Investment position accruing ``principal * weekly_rate`` per week."""

    __tablename__ = "mining_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Identifier of the owning user"
    )

    principal: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="Invested amount"
    )

    weekly_rate: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="Yield per week as a fraction of principal"
    )

    start_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        comment="When the slot started earning"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Hard expiry; NULL for open-ended slots"
    )

    last_accrued_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        comment="Watermark up to which earnings have been computed"
    )

    accrued_earnings: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0"),
        comment="Earnings computed but not yet moved to the wallet"
    )

    claimed_earnings: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0"),
        comment="Cumulative earnings credited to the wallet from this slot"
    )

    rate_since: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        comment="Start of the segment earning at the current weekly_rate"
    )

    base_earnings: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0"),
        comment="Earnings of all segments before rate_since"
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency counter, incremented by every write"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="False once the slot is closed"
    )

    __table_args__ = (
        CheckConstraint("principal > 0", name="ck_mining_slots_principal_positive"),
        CheckConstraint("weekly_rate >= 0 AND weekly_rate <= 1", name="ck_mining_slots_rate_range"),
        CheckConstraint("accrued_earnings >= 0", name="ck_mining_slots_accrued_non_negative"),
        Index("ix_mining_slots_owner_active", "owner_id", "is_active"),
        Index("ix_mining_slots_active_expires", "is_active", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<MiningSlot(id={self.id}, owner={self.owner_id}, principal={self.principal}, "
            f"active={self.is_active}, v={self.version})>"
        )

    @property
    def is_open_ended(self) -> bool:
        return self.expires_at is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def state(self, now: datetime) -> SlotState:
        if not self.is_active:
            return SlotState.CLOSED
        if self.is_expired(now):
            return SlotState.EXPIRED_PENDING
        if self.is_open_ended and self.claimed_earnings > 0:
            return SlotState.AUTO_CLAIMED
        return SlotState.ACTIVE

    def to_snapshot(self) -> dict:
        """JSON-friendly view used by caches and push events."""
        return {
            "slot_id": self.id,
            "owner_id": self.owner_id,
            "principal": str(self.principal),
            "weekly_rate": str(self.weekly_rate),
            "start_at": self.start_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_accrued_at": self.last_accrued_at.isoformat(),
            "accrued_earnings": str(self.accrued_earnings),
            "claimed_earnings": str(self.claimed_earnings),
            "rate_since": self.rate_since.isoformat(),
            "base_earnings": str(self.base_earnings),
            "is_active": self.is_active,
            "version": self.version,
        }
