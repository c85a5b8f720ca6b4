"""
User routes: points breakdowns, badges, check-in and points history.
"""

from fastapi import APIRouter, Depends, Query

import structlog

from gmtea.api.dependencies import get_query_service, validate_address_param
from gmtea.api.schemas.common import SuccessResponse
from gmtea.api.schemas.points import (
    BadgeEntry,
    CheckinEntry,
    PointsBreakdown,
    PointsHistoryEntry,
    UserRank,
)
from gmtea.services.query_service import QueryService

router = APIRouter(tags=["Users"])
logger = structlog.get_logger(__name__)


@router.get(
    "/{address}/points",
    response_model=SuccessResponse,
    summary="Get Points Breakdown",
    description="Stored points split by check-ins, badges and other bonuses"
)
async def get_points_breakdown(
    address: str = Depends(validate_address_param),
    queries: QueryService = Depends(get_query_service),
):
    breakdown = await queries.get_points_breakdown(address)
    return SuccessResponse(data=PointsBreakdown(**breakdown))


@router.get(
    "/{address}/badges",
    response_model=SuccessResponse,
    summary="Get User Badges"
)
async def get_user_badges(
    address: str = Depends(validate_address_param),
    queries: QueryService = Depends(get_query_service),
):
    badges = await queries.get_user_badges(address)
    return SuccessResponse(data=[BadgeEntry(**badge) for badge in badges])


@router.get(
    "/{address}/checkins",
    response_model=SuccessResponse,
    summary="Get Check-in History",
    description="Most recent check-ins first"
)
async def get_checkin_history(
    address: str = Depends(validate_address_param),
    limit: int = Query(50, ge=1, le=200, description="Number of entries to return"),
    offset: int = Query(0, ge=0, description="Number of entries to skip"),
    queries: QueryService = Depends(get_query_service),
):
    history = await queries.get_checkin_history(address, limit=limit, offset=offset)
    return SuccessResponse(data=[CheckinEntry(**entry) for entry in history])


@router.get(
    "/{address}/history",
    response_model=SuccessResponse,
    summary="Get Points History"
)
async def get_points_history(
    address: str = Depends(validate_address_param),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    queries: QueryService = Depends(get_query_service),
):
    history = await queries.get_points_history(address, limit=limit, offset=offset)
    return SuccessResponse(data=[PointsHistoryEntry(**entry) for entry in history])


@router.get(
    "/{address}/rank",
    response_model=SuccessResponse,
    summary="Get User Rank"
)
async def get_user_rank(
    address: str = Depends(validate_address_param),
    queries: QueryService = Depends(get_query_service),
):
    return SuccessResponse(data=UserRank(**await queries.get_user_rank(address)))
