"""
Leaderboard routes.
"""

from fastapi import APIRouter, Depends, Query

import structlog

from gmtea.api.dependencies import get_query_service
from gmtea.api.schemas.common import SuccessResponse
from gmtea.api.schemas.points import LeaderboardPage
from gmtea.services.query_service import QueryService

router = APIRouter(tags=["Leaderboards"])
logger = structlog.get_logger(__name__)


@router.get(
    "/points",
    response_model=SuccessResponse,
    summary="Get Points Leaderboard",
    description="Users with points, highest total first"
)
async def get_points_leaderboard(
    limit: int = Query(50, ge=1, le=200, description="Number of entries to return"),
    offset: int = Query(0, ge=0, description="Number of entries to skip"),
    queries: QueryService = Depends(get_query_service),
):
    logger.debug("Getting points leaderboard", limit=limit, offset=offset)
    page = await queries.get_leaderboard("points", limit=limit, offset=offset)
    return SuccessResponse(data=LeaderboardPage(**page))


@router.get(
    "/checkins",
    response_model=SuccessResponse,
    summary="Get Check-in Leaderboard"
)
async def get_checkin_leaderboard(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    queries: QueryService = Depends(get_query_service),
):
    page = await queries.get_leaderboard("checkins", limit=limit, offset=offset)
    return SuccessResponse(data=LeaderboardPage(**page))


@router.get(
    "/badges",
    response_model=SuccessResponse,
    summary="Get Badge Statistics",
    description="Minted badge counts per tier"
)
async def get_badge_stats(queries: QueryService = Depends(get_query_service)):
    return SuccessResponse(data=await queries.get_badge_stats())
