"""
Wallet model - spendable balance per owner and currency.
Only BalanceUpdateService writes to this table.
"""

from decimal import Decimal

from sqlalchemy import CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, Money, TimestampMixin


class Wallet(Base, TimestampMixin):
    """Per-currency balance of an owner."""

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Identifier of the owning user"
    )

    currency: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="Currency code"
    )

    balance: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0"),
        comment="Spendable balance, never negative"
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "currency", name="uq_wallets_owner_currency"),
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Wallet(owner={self.owner_id}, currency={self.currency}, balance={self.balance})>"
