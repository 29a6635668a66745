"""
Earnings routes.
Accrued totals, claiming, recovery info, snapshots and processor controls.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from mining_engine.api.dependencies import get_engine
from mining_engine.api.schemas.common import SuccessResponse, create_success_response
from mining_engine.api.schemas.earnings import (
    AccruedEarningsData,
    ClaimRequest,
    ClaimResponseData,
    RecoveryInfoData,
)
from mining_engine.core.exceptions import NotFoundError
from mining_engine.engine import MiningEngine
from mining_engine.scheduler.base import TickStats

import structlog

logger = structlog.get_logger(__name__)

router = APIRouter()


def _tick_data(tick: TickStats) -> Dict[str, Any]:
    return {
        "slots_found": tick.slots_found,
        "slots_processed": tick.slots_processed,
        "slots_skipped": tick.slots_skipped,
        "conflicts": tick.conflicts,
        "failed": tick.failed,
        "batch_fallbacks": tick.batch_fallbacks,
        "amount_total": str(tick.amount_total),
        "owners_affected": tick.owners_affected,
        "processing_time_seconds": round(tick.total_processing_time, 3),
        "errors": tick.errors[:5],
    }


# System routes are declared first so "/stats" and "/system/..." never match "/{owner_id}"
@router.get(
    "/stats",
    response_model=SuccessResponse,
    summary="Global Statistics",
    description="Slot and earnings totals across all owners (cached)"
)
async def get_global_stats(engine: MiningEngine = Depends(get_engine)):
    stats = await engine.query_service.get_global_stats()
    return create_success_response(data=stats)


@router.get(
    "/system/health",
    response_model=SuccessResponse,
    summary="Engine Health",
    description="Database, processor and cache health"
)
async def get_system_health(engine: MiningEngine = Depends(get_engine)):
    report = await engine.health_check()
    return create_success_response(
        data=report,
        message="healthy" if report["healthy"] else "degraded"
    )


@router.post(
    "/system/processors/{processor_name}/run",
    response_model=SuccessResponse,
    summary="Manual Processor Run",
    description="Run one tick of a periodic processor immediately"
)
async def run_processor(processor_name: str, engine: MiningEngine = Depends(get_engine)):
    processors = {processor.name: processor for processor in engine.processors}
    processor = processors.get(processor_name)
    if processor is None:
        raise NotFoundError(
            f"Unknown processor: {processor_name}",
            {"processor": processor_name, "available": sorted(processors)}
        )

    logger.info("Manual processor run triggered via API", processor=processor_name)
    tick = await processor.run_once()
    return create_success_response(
        data={"processor": processor_name, "tick": _tick_data(tick)},
        message=f"Processed {tick.slots_processed}/{tick.slots_found} slots"
    )


@router.post(
    "/system/reconcile",
    response_model=SuccessResponse,
    summary="Reconcile Expired Slots",
    description="Compare expired slots with the ledger and repair missing credits"
)
async def reconcile_expired_slots(engine: MiningEngine = Depends(get_engine)):
    report = await engine.expiration.reconcile()
    return create_success_response(
        data={
            "checked": report.checked,
            "closed_without_credit": report.closed_without_credit,
            "credited": {str(slot_id): str(amount) for slot_id, amount in report.credited.items()},
            "amount_credited": str(report.amount_credited),
            "over_credited": {str(slot_id): str(amount) for slot_id, amount in report.over_credited.items()},
            "conflicts": report.conflicts,
            "errors": report.errors[:5],
        }
    )


@router.get(
    "/{owner_id}/accrued",
    response_model=SuccessResponse,
    summary="Accrued Earnings",
    description="Parked plus live pending earnings over the owner's active slots"
)
async def get_accrued_earnings(owner_id: str, engine: MiningEngine = Depends(get_engine)):
    amount = await engine.query_service.get_accrued_earnings(owner_id)
    data = AccruedEarningsData(
        owner_id=owner_id,
        currency=engine.config.default_currency,
        accrued_earnings=amount,
        calculated_at=engine.clock(),
    )
    return create_success_response(data=data.model_dump(mode="json"))


@router.post(
    "/{owner_id}/claim",
    response_model=SuccessResponse,
    summary="Claim Earnings",
    description="Move the earnings of the selected (or all) active slots into the wallet"
)
async def claim_earnings(
    owner_id: str,
    request: Optional[ClaimRequest] = Body(default=None),
    engine: MiningEngine = Depends(get_engine),
):
    slot_ids = request.slot_ids if request is not None else None
    result = await engine.claim_service.claim(owner_id, slot_ids)
    data = ClaimResponseData.from_result(result)
    return create_success_response(
        data=data.model_dump(mode="json"),
        message=f"Claimed {result.claimed_amount} {result.currency}"
    )


@router.get(
    "/{owner_id}/recovery",
    response_model=SuccessResponse,
    summary="Recovery Info",
    description="Un-accrued time and earnings pending on each active slot"
)
async def get_recovery_info(owner_id: str, engine: MiningEngine = Depends(get_engine)):
    info = await engine.query_service.get_recovery_info(owner_id)
    return create_success_response(data=RecoveryInfoData.from_info(info).model_dump(mode="json"))


@router.get(
    "/{owner_id}/snapshot",
    response_model=SuccessResponse,
    summary="Owner Snapshot",
    description="Balance and slots of an owner (cached)"
)
async def get_owner_snapshot(owner_id: str, engine: MiningEngine = Depends(get_engine)):
    snapshot = await engine.query_service.get_owner_snapshot(owner_id)
    return create_success_response(data=snapshot)
