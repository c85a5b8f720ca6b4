"""
Admin routes for indexing and reconciliation operations.

All routes require the X-Admin-Key header.
"""

from fastapi import APIRouter, Depends

import structlog

from gmtea.api.dependencies import get_scheduler, require_admin
from gmtea.api.schemas.common import SuccessResponse
from gmtea.api.schemas.points import (
    IntervalRequest,
    RecalculateRequest,
    ReindexRequest,
    RewardSyncRequest,
)
from gmtea.scheduler.indexing_scheduler import IndexingScheduler

router = APIRouter(tags=["Admin"], dependencies=[Depends(require_admin)])
logger = structlog.get_logger(__name__)


@router.get("/status", response_model=SuccessResponse, summary="Indexer Status")
async def get_indexer_status(scheduler: IndexingScheduler = Depends(get_scheduler)):
    return SuccessResponse(data=await scheduler.get_status())


@router.post("/index", response_model=SuccessResponse, summary="Run Indexing Cycle Now")
async def run_indexing_cycle(scheduler: IndexingScheduler = Depends(get_scheduler)):
    logger.info("Manual indexing cycle requested")
    report = await scheduler.run_cycle()
    return SuccessResponse(message="Indexing cycle finished", data=report.to_dict())


@router.post("/reindex", response_model=SuccessResponse, summary="Reindex From Deploy Block")
async def reindex(
    request: ReindexRequest,
    scheduler: IndexingScheduler = Depends(get_scheduler),
):
    logger.warning("Reindex requested", source=request.source or "all")
    result = await scheduler.reindex_all(request.source)
    return SuccessResponse(message="Reindex finished", data=result)


@router.post("/recalculate", response_model=SuccessResponse, summary="Recalculate Points")
async def recalculate_points(
    request: RecalculateRequest,
    scheduler: IndexingScheduler = Depends(get_scheduler),
):
    result = await scheduler.recalculate_points(request.address)
    return SuccessResponse(message="Points recalculated", data=result)


@router.post("/ranks", response_model=SuccessResponse, summary="Recalculate All Ranks")
async def recalculate_ranks(scheduler: IndexingScheduler = Depends(get_scheduler)):
    return SuccessResponse(message="Ranks recalculated", data=await scheduler.recalculate_all_ranks())


@router.post("/fix-referrers", response_model=SuccessResponse, summary="Lower-case Stored Referrers")
async def fix_referrer_casing(scheduler: IndexingScheduler = Depends(get_scheduler)):
    return SuccessResponse(data=await scheduler.fix_referrer_casing())


@router.post("/sync-rewards", response_model=SuccessResponse, summary="Resync Referral Rewards For One Address")
async def sync_address_rewards(
    request: RewardSyncRequest,
    scheduler: IndexingScheduler = Depends(get_scheduler),
):
    return SuccessResponse(data=await scheduler.sync_address_rewards(request.address))


@router.put("/interval", response_model=SuccessResponse, summary="Change Indexing Interval")
async def set_interval(
    request: IntervalRequest,
    scheduler: IndexingScheduler = Depends(get_scheduler),
):
    scheduler.set_interval(request.minutes)
    return SuccessResponse(data={"interval_minutes": scheduler.interval_minutes})
