"""
Mining slot routes: investment purchase, term extension, rate upgrade,
closing an expired slot and slot snapshots.
"""

from fastapi import APIRouter, Depends, status

from mining_engine.api.dependencies import get_engine
from mining_engine.api.schemas.common import SuccessResponse, create_success_response
from mining_engine.api.schemas.earnings import OpenSlotRequest, SlotActionRequest, UpgradeSlotRequest
from mining_engine.engine import MiningEngine

router = APIRouter()


@router.post(
    "",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open Mining Slot",
    description="Debit the owner's wallet and open a new mining slot at the configured weekly rate"
)
async def open_slot(request: OpenSlotRequest, engine: MiningEngine = Depends(get_engine)):
    slot = await engine.investment_service.open_slot(request.owner_id, request.principal)
    return create_success_response(data=slot.to_snapshot(), message=f"Mining slot #{slot.id} opened")


@router.post(
    "/{slot_id}/extend",
    response_model=SuccessResponse,
    summary="Extend Mining Slot",
    description="Pay the extension cost and push the slot's expiry out by one extension period"
)
async def extend_slot(slot_id: int, request: SlotActionRequest, engine: MiningEngine = Depends(get_engine)):
    slot = await engine.investment_service.extend_slot(request.owner_id, slot_id)
    return create_success_response(data=slot.to_snapshot(), message=f"Mining slot #{slot.id} extended")


@router.post(
    "/{slot_id}/upgrade",
    response_model=SuccessResponse,
    summary="Upgrade Mining Slot",
    description="Pay a share of the principal to raise the slot's weekly rate from now on"
)
async def upgrade_slot(slot_id: int, request: UpgradeSlotRequest, engine: MiningEngine = Depends(get_engine)):
    slot = await engine.investment_service.upgrade_slot(request.owner_id, slot_id, request.new_rate)
    return create_success_response(data=slot.to_snapshot(), message=f"Mining slot #{slot.id} upgraded")


@router.post(
    "/{slot_id}/close",
    response_model=SuccessResponse,
    summary="Close Expired Slot",
    description="Credit the final earnings of an expired slot and close it without waiting for the processor"
)
async def close_expired_slot(slot_id: int, request: SlotActionRequest, engine: MiningEngine = Depends(get_engine)):
    outcome = await engine.expiration.close_expired_slot(request.owner_id, slot_id)
    return create_success_response(
        data={
            "slot_id": outcome.slot_id,
            "owner_id": outcome.owner_id,
            "final_earnings": str(outcome.final_earnings),
            "new_balance": str(outcome.balance.new_balance) if outcome.balance else None,
        },
        message=f"Mining slot #{outcome.slot_id} closed"
    )


@router.get(
    "/{slot_id}",
    response_model=SuccessResponse,
    summary="Slot Snapshot",
    description="Current state and claimable earnings of a slot (cached)"
)
async def get_slot(slot_id: int, engine: MiningEngine = Depends(get_engine)):
    snapshot = await engine.query_service.get_slot_snapshot(slot_id)
    return create_success_response(data=snapshot)
