"""
Ledger sink over the activity_logs table.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mining_engine.core.database import transaction_scope, translate_store_errors
from mining_engine.models.activity import ActivityLog, ActivityLogType, EARNINGS_CREDIT_TYPES


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    owner_id: str
    type: ActivityLogType
    amount: Decimal
    currency: str
    description: str = ""
    reference_id: Optional[str] = None


class Ledger:
    """Append-only activity log. Entries are never updated or deleted."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        self.logger = logger.bind(service="ledger")

    async def append(self, entry: LedgerEntry, session: Optional[AsyncSession] = None) -> ActivityLog:
        """Write ``entry``; joins the caller's transaction when ``session`` is given."""
        row = ActivityLog(
            owner_id=entry.owner_id,
            type=entry.type,
            amount=entry.amount,
            currency=entry.currency,
            description=entry.description,
            reference_id=entry.reference_id,
        )
        async with translate_store_errors("ledger_append"):
            async with transaction_scope(self.session_maker, session) as db:
                db.add(row)
                await db.flush()

        self.logger.debug(
            "Ledger entry appended",
            owner_id=entry.owner_id,
            type=entry.type.value,
            amount=str(entry.amount),
            reference_id=entry.reference_id
        )
        return row

    async def sum_by_reference(
        self,
        reference_ids: Iterable[str],
        types: Sequence[ActivityLogType] = EARNINGS_CREDIT_TYPES,
        session: Optional[AsyncSession] = None,
    ) -> Dict[str, Decimal]:
        """Total credited per reference id; ids without entries map to zero."""
        ids = list(reference_ids)
        totals = {ref: Decimal("0") for ref in ids}
        if not ids:
            return totals

        stmt = (
            select(ActivityLog.reference_id, func.sum(ActivityLog.amount))
            .where(ActivityLog.reference_id.in_(ids), ActivityLog.type.in_(list(types)))
            .group_by(ActivityLog.reference_id)
        )
        async with translate_store_errors("ledger_sum"):
            async with transaction_scope(self.session_maker, session) as db:
                for reference_id, total in (await db.execute(stmt)).all():
                    totals[reference_id] = Decimal(str(total or 0)).quantize(Decimal("0.00000001"))
        return totals

    async def find_entries(
        self,
        owner_id: Optional[str] = None,
        log_type: Optional[ActivityLogType] = None,
        reference_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ActivityLog]:
        stmt = select(ActivityLog)
        if owner_id is not None:
            stmt = stmt.where(ActivityLog.owner_id == owner_id)
        if log_type is not None:
            stmt = stmt.where(ActivityLog.type == log_type)
        if reference_id is not None:
            stmt = stmt.where(ActivityLog.reference_id == reference_id)
        stmt = stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)

        async with translate_store_errors("ledger_find"):
            async with transaction_scope(self.session_maker) as db:
                return list((await db.execute(stmt)).scalars().all())
