"""
Balance update service - the only writer of wallet balances.

Every mutation locks the wallet row, checks the result stays non-negative,
persists the new balance and appends exactly one ledger entry, all inside a
single transaction.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mining_engine.core.database import transaction_scope, translate_store_errors
from mining_engine.core.exceptions import InsufficientBalanceError, ValidationError
from mining_engine.models.activity import ActivityLogType
from mining_engine.models.wallet import Wallet
from mining_engine.services.accrual import ZERO, quantize_amount, to_decimal
from mining_engine.services.ledger import Ledger, LedgerEntry


logger = structlog.get_logger(__name__)


@dataclass
class BalanceUpdate:
    owner_id: str
    currency: str
    amount: Any
    description: str
    log_type: ActivityLogType
    reference_id: Optional[str] = None


@dataclass
class BalanceUpdateResult:
    owner_id: str
    currency: str
    previous_balance: Decimal
    new_balance: Decimal
    change_amount: Decimal
    wallet_id: int
    reference_id: Optional[str] = None


class BalanceUpdateService:
    """Atomic, audited wallet mutations."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], ledger: Optional[Ledger] = None):
        self.session_maker = session_maker
        self.ledger = ledger or Ledger(session_maker)
        self.logger = logger.bind(service="balance_update")

    @staticmethod
    def _validate_amount(amount: Any) -> Decimal:
        value = quantize_amount(to_decimal(amount, "amount"))
        if value == 0:
            raise ValidationError("Balance change must not be zero", {"amount": str(amount)})
        return value

    async def _lock_wallet(self, db: AsyncSession, owner_id: str, currency: str) -> Wallet:
        """Fetch the wallet row FOR UPDATE, creating it at zero if absent."""
        stmt = (
            select(Wallet)
            .where(Wallet.owner_id == owner_id, Wallet.currency == currency)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = (await db.execute(stmt)).scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(owner_id=owner_id, currency=currency, balance=ZERO)
            db.add(wallet)
            await db.flush()
            self.logger.info("Wallet created", owner_id=owner_id, currency=currency)
        return wallet

    async def _apply(self, db: AsyncSession, item: BalanceUpdate) -> BalanceUpdateResult:
        if not item.owner_id:
            raise ValidationError("Owner id is required")
        if not item.currency:
            raise ValidationError("Currency is required", {"owner_id": item.owner_id})
        amount = self._validate_amount(item.amount)

        wallet = await self._lock_wallet(db, item.owner_id, item.currency)
        previous = quantize_amount(wallet.balance)
        new_balance = quantize_amount(previous + amount)
        if new_balance < 0:
            raise InsufficientBalanceError(item.owner_id, item.currency, previous, -amount)

        wallet.balance = new_balance
        await self.ledger.append(
            LedgerEntry(
                owner_id=item.owner_id,
                type=item.log_type,
                amount=amount,
                currency=item.currency,
                description=item.description,
                reference_id=item.reference_id,
            ),
            session=db,
        )

        return BalanceUpdateResult(
            owner_id=item.owner_id,
            currency=item.currency,
            previous_balance=previous,
            new_balance=new_balance,
            change_amount=amount,
            wallet_id=wallet.id,
            reference_id=item.reference_id,
        )

    async def update_balance(
        self,
        owner_id: str,
        currency: str,
        amount: Any,
        description: str,
        log_type: ActivityLogType,
        reference_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> BalanceUpdateResult:
        """
        Change one wallet by ``amount`` (signed).

        Raises ValidationError for malformed or zero amounts and
        InsufficientBalanceError when the result would be negative; in both
        cases nothing is written.
        """
        item = BalanceUpdate(owner_id, currency, amount, description, log_type, reference_id)
        async with translate_store_errors("update_balance"):
            async with transaction_scope(self.session_maker, session) as db:
                result = await self._apply(db, item)

        self.logger.info(
            "Balance updated",
            owner_id=owner_id,
            currency=currency,
            change=str(result.change_amount),
            new_balance=str(result.new_balance),
            type=log_type.value
        )
        return result

    async def update_multiple_balances(
        self,
        updates: Sequence[BalanceUpdate],
        session: Optional[AsyncSession] = None,
    ) -> List[BalanceUpdateResult]:
        """Apply all updates in one transaction; any failure leaves every wallet untouched."""
        results: List[BalanceUpdateResult] = []
        if not updates:
            return results

        async with translate_store_errors("update_multiple_balances"):
            async with transaction_scope(self.session_maker, session) as db:
                for item in updates:
                    results.append(await self._apply(db, item))

        self.logger.info(
            "Multiple balances updated",
            updates=len(results),
            owners=len({r.owner_id for r in results})
        )
        return results

    async def get_balance(self, owner_id: str, currency: str) -> Decimal:
        """Current balance; zero when the wallet does not exist yet."""
        stmt = select(Wallet.balance).where(Wallet.owner_id == owner_id, Wallet.currency == currency)
        async with translate_store_errors("get_balance"):
            async with transaction_scope(self.session_maker) as db:
                balance = (await db.execute(stmt)).scalar_one_or_none()
        return quantize_amount(balance) if balance is not None else ZERO

    async def get_wallets(self, owner_id: str) -> List[Wallet]:
        stmt = select(Wallet).where(Wallet.owner_id == owner_id).order_by(Wallet.currency)
        async with translate_store_errors("get_wallets"):
            async with transaction_scope(self.session_maker) as db:
                return list((await db.execute(stmt)).scalars().all())
