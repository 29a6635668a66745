"""
Slot store - persistence of mining slots with version-guarded writes.

Every mutation is ``UPDATE ... WHERE id = :id AND version = :expected``; a
write that matches zero rows lost a race and is reported as a
ConcurrencyConflictError instead of silently overwriting the winner.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mining_engine.core.database import transaction_scope, translate_store_errors
from mining_engine.core.exceptions import ConcurrencyConflictError, ValidationError
from mining_engine.models.slot import MiningSlot
from mining_engine.utils.time import utc_now


logger = structlog.get_logger(__name__)

# Columns processors and services are allowed to change through update()
UPDATABLE_FIELDS = frozenset({
    "last_accrued_at",
    "accrued_earnings",
    "claimed_earnings",
    "is_active",
    "expires_at",
    "weekly_rate",
    "rate_since",
    "base_earnings",
})


@dataclass
class SlotFilter:
    """Selection window for find_eligible(). Unset fields do not constrain."""
    owner_id: Optional[str] = None
    slot_ids: Optional[Sequence[int]] = None
    active_only: bool = True
    # expires_at IS NULL OR expires_at > not_expired_at
    not_expired_at: Optional[datetime] = None
    # expires_at <= expired_at (open-ended slots never match)
    expired_at: Optional[datetime] = None
    started_before: Optional[datetime] = None
    watermark_before: Optional[datetime] = None
    after_id: Optional[int] = None
    limit: Optional[int] = None


@dataclass
class SlotUpdate:
    """One version-guarded write for batch_update()."""
    slot_id: int
    expected_version: int
    fields: Dict[str, Any]


@dataclass
class BatchUpdateResult:
    applied: List[int] = field(default_factory=list)
    conflicts: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    used_fallback: bool = False

    @property
    def total(self) -> int:
        return len(self.applied) + len(self.conflicts) + len(self.failed)


class SlotStore:
    """Reads and conditional writes of MiningSlot rows."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        self.logger = logger.bind(service="slot_store")

    def _build_query(self, slot_filter: SlotFilter):
        stmt = select(MiningSlot)

        if slot_filter.active_only:
            stmt = stmt.where(MiningSlot.is_active.is_(True))
        if slot_filter.owner_id is not None:
            stmt = stmt.where(MiningSlot.owner_id == slot_filter.owner_id)
        if slot_filter.slot_ids is not None:
            stmt = stmt.where(MiningSlot.id.in_(list(slot_filter.slot_ids)))
        if slot_filter.not_expired_at is not None:
            stmt = stmt.where(or_(
                MiningSlot.expires_at.is_(None),
                MiningSlot.expires_at > slot_filter.not_expired_at,
            ))
        if slot_filter.expired_at is not None:
            stmt = stmt.where(
                MiningSlot.expires_at.is_not(None),
                MiningSlot.expires_at <= slot_filter.expired_at,
            )
        if slot_filter.started_before is not None:
            stmt = stmt.where(MiningSlot.start_at <= slot_filter.started_before)
        if slot_filter.watermark_before is not None:
            stmt = stmt.where(MiningSlot.last_accrued_at < slot_filter.watermark_before)
        if slot_filter.after_id is not None:
            stmt = stmt.where(MiningSlot.id > slot_filter.after_id)

        return stmt

    async def find_eligible(
        self,
        slot_filter: SlotFilter,
        session: Optional[AsyncSession] = None,
    ) -> List[MiningSlot]:
        """Slots matching the filter, ordered by id."""
        stmt = self._build_query(slot_filter).order_by(MiningSlot.id)
        if slot_filter.limit is not None:
            stmt = stmt.limit(slot_filter.limit)

        async with translate_store_errors("find_eligible"):
            async with transaction_scope(self.session_maker, session) as db:
                result = await db.execute(stmt.execution_options(populate_existing=True))
                return list(result.scalars().all())

    async def count_eligible(self, slot_filter: SlotFilter) -> int:
        stmt = select(func.count()).select_from(self._build_query(slot_filter).subquery())
        async with translate_store_errors("count_eligible"):
            async with transaction_scope(self.session_maker) as db:
                return int((await db.execute(stmt)).scalar_one())

    async def get(self, slot_id: int, session: Optional[AsyncSession] = None) -> Optional[MiningSlot]:
        slots = await self.find_eligible(SlotFilter(slot_ids=[slot_id], active_only=False), session=session)
        return slots[0] if slots else None

    async def create_slot(
        self,
        owner_id: str,
        principal: Decimal,
        weekly_rate: Decimal,
        start_at: datetime,
        expires_at: Optional[datetime],
        session: Optional[AsyncSession] = None,
    ) -> MiningSlot:
        """Insert a new active slot whose watermark starts at ``start_at``."""
        slot = MiningSlot(
            owner_id=owner_id,
            principal=principal,
            weekly_rate=weekly_rate,
            start_at=start_at,
            expires_at=expires_at,
            last_accrued_at=start_at,
            accrued_earnings=Decimal("0"),
            claimed_earnings=Decimal("0"),
            rate_since=start_at,
            base_earnings=Decimal("0"),
            version=1,
            is_active=True,
        )
        async with translate_store_errors("create_slot"):
            async with transaction_scope(self.session_maker, session) as db:
                db.add(slot)
                await db.flush()

        self.logger.info("Mining slot created", slot_id=slot.id, owner_id=owner_id, principal=str(principal))
        return slot

    async def _apply_update(self, db: AsyncSession, slot_id: int, fields: Dict[str, Any], expected_version: int) -> int:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable: {sorted(unknown)}", {"slot_id": slot_id})

        new_version = expected_version + 1
        stmt = (
            update(MiningSlot)
            .where(MiningSlot.id == slot_id, MiningSlot.version == expected_version)
            .values(**fields, version=new_version, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrencyConflictError(slot_id, expected_version)
        return new_version

    async def update(
        self,
        slot_id: int,
        fields: Dict[str, Any],
        expected_version: int,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Apply ``fields`` only if the row still carries ``expected_version``.

        Returns the new version. Raises ConcurrencyConflictError when the row
        changed since it was read (or no longer exists).
        """
        async with translate_store_errors("update_slot"):
            async with transaction_scope(self.session_maker, session) as db:
                return await self._apply_update(db, slot_id, fields, expected_version)

    async def batch_update(self, updates: Sequence[SlotUpdate]) -> BatchUpdateResult:
        """
        Apply many guarded writes in one transaction.

        Conflicting rows are skipped. If the batch transaction itself fails
        the writes are retried one transaction per row so that a single bad
        row cannot hold back the rest.
        """
        result = BatchUpdateResult()
        if not updates:
            return result

        try:
            async with translate_store_errors("batch_update"):
                async with transaction_scope(self.session_maker) as db:
                    for item in updates:
                        try:
                            await self._apply_update(db, item.slot_id, item.fields, item.expected_version)
                            result.applied.append(item.slot_id)
                        except ConcurrencyConflictError:
                            result.conflicts.append(item.slot_id)
            return result
        except Exception as e:
            self.logger.warning(
                "Batch update failed, falling back to individual writes",
                batch_size=len(updates),
                error=str(e)
            )

        result = BatchUpdateResult(used_fallback=True)
        for item in updates:
            try:
                await self.update(item.slot_id, item.fields, item.expected_version)
                result.applied.append(item.slot_id)
            except ConcurrencyConflictError:
                result.conflicts.append(item.slot_id)
            except Exception as e:
                self.logger.error("Slot update failed", slot_id=item.slot_id, error=str(e))
                result.failed[item.slot_id] = str(e)
        return result

    async def aggregate_totals(self) -> Dict[str, Any]:
        """Counts and sums over all slots for the global stats view."""
        stmt = select(
            func.count(MiningSlot.id),
            func.coalesce(func.sum(MiningSlot.principal), 0),
            func.coalesce(func.sum(MiningSlot.accrued_earnings), 0),
            func.coalesce(func.sum(MiningSlot.claimed_earnings), 0),
        ).where(MiningSlot.is_active.is_(True))
        total_stmt = select(func.count(MiningSlot.id))

        async with translate_store_errors("aggregate_totals"):
            async with transaction_scope(self.session_maker) as db:
                active_count, principal, accrued, claimed = (await db.execute(stmt)).one()
                total_count = (await db.execute(total_stmt)).scalar_one()

        return {
            "total_slots": int(total_count),
            "active_slots": int(active_count),
            "total_principal": Decimal(str(principal)),
            "total_accrued": Decimal(str(accrued)),
            "total_claimed": Decimal(str(claimed)),
        }
