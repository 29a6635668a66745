"""
Earnings-related Pydantic schemas for API.
Amounts are Decimals and serialize as strings.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from mining_engine.services.claim_service import ClaimResult
from mining_engine.services.earnings_query_service import RecoveryInfo


class AccruedEarningsData(BaseModel):
    owner_id: str
    currency: str
    accrued_earnings: Decimal
    calculated_at: datetime


class ClaimRequest(BaseModel):
    """Earnings claim request model."""
    slot_ids: Optional[List[int]] = Field(
        default=None,
        description="Slots to claim from (default: all active slots)"
    )


class ClaimedSlotData(BaseModel):
    slot_id: int
    amount: Decimal


class ClaimResponseData(BaseModel):
    """Earnings claim response model."""
    owner_id: str
    currency: str
    claimed_amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    claimed_at: datetime
    slots: List[ClaimedSlotData]

    @classmethod
    def from_result(cls, result: ClaimResult) -> "ClaimResponseData":
        return cls(
            owner_id=result.owner_id,
            currency=result.currency,
            claimed_amount=result.claimed_amount,
            previous_balance=result.previous_balance,
            new_balance=result.new_balance,
            claimed_at=result.claimed_at,
            slots=[ClaimedSlotData(slot_id=s.slot_id, amount=s.amount) for s in result.slots],
        )


class SlotRecoveryData(BaseModel):
    slot_id: int
    last_accrued_at: datetime
    pending_seconds: float
    pending_earnings: Decimal


class RecoveryInfoData(BaseModel):
    """Pending un-accrued time per active slot."""
    owner_id: str
    checked_at: datetime
    threshold_seconds: float
    needs_recovery: bool
    max_pending_seconds: float
    total_pending_earnings: Decimal
    slots: List[SlotRecoveryData]

    @classmethod
    def from_info(cls, info: RecoveryInfo) -> "RecoveryInfoData":
        return cls(
            owner_id=info.owner_id,
            checked_at=info.checked_at,
            threshold_seconds=info.threshold_seconds,
            needs_recovery=info.needs_recovery,
            max_pending_seconds=info.max_pending_seconds,
            total_pending_earnings=info.total_pending_earnings,
            slots=[
                SlotRecoveryData(
                    slot_id=s.slot_id,
                    last_accrued_at=s.last_accrued_at,
                    pending_seconds=s.pending_seconds,
                    pending_earnings=s.pending_earnings,
                )
                for s in info.slots
            ],
        )


class OpenSlotRequest(BaseModel):
    """Investment purchase request model."""
    owner_id: str = Field(min_length=1, max_length=64)
    principal: Decimal = Field(description="Amount to invest")


class SlotActionRequest(BaseModel):
    """Owner acting on one of their slots."""
    owner_id: str = Field(min_length=1, max_length=64)


class UpgradeSlotRequest(SlotActionRequest):
    new_rate: Decimal = Field(gt=0, le=1, description="New weekly yield fraction")
