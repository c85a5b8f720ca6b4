"""
Read-only accessors over the projected User fields and event records.
"""

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.core.exceptions import UserNotFoundError, ValidationError
from gmtea.models.badge import Badge
from gmtea.models.checkin import Checkin
from gmtea.models.points_ledger import PointsLedgerEntry, PointsSource
from gmtea.models.user import User
from gmtea.services.cache import CacheBackend
from gmtea.services.points_calculation import get_checkin_boost, get_tier_name
from gmtea.services.user_service import get_user
from gmtea.utils.formatters import normalize_address
from gmtea.utils.validation import validate_pagination

logger = structlog.get_logger(__name__)

LEADERBOARD_CACHE_PREFIX = "leaderboard:"
LEADERBOARD_ORDERS = ("points", "checkins")


class QueryService:
    """Points breakdowns, histories and leaderboards."""
    
    def __init__(self, db: AsyncSession, cache: Optional[CacheBackend] = None, leaderboard_ttl_seconds: int = 60):
        self.db = db
        self.cache = cache
        self.leaderboard_ttl_seconds = leaderboard_ttl_seconds
    
    async def _require_user(self, address: str) -> User:
        address = normalize_address(address)
        user = await get_user(self.db, address)
        if user is None:
            raise UserNotFoundError(address)
        return user
    
    async def get_points_breakdown(self, address: str) -> Dict[str, Any]:
        """
        Stored breakdown for an address.
        
        `referral_points` is reported next to the total but is not part of it.
        """
        user = await self._require_user(address)
        referral_points = (await self.db.execute(
            select(func.coalesce(func.sum(PointsLedgerEntry.points), 0)).where(
                PointsLedgerEntry.address == user.address,
                PointsLedgerEntry.source == PointsSource.REFERRAL,
            )
        )).scalar_one()
        
        return {
            "address": user.address,
            "username": user.username,
            "total_points": user.points,
            "checkin_points": user.checkin_points,
            "badge_points": user.badge_points,
            "other_points": user.other_points,
            "referral_points": int(referral_points),
            "checkin_count": user.checkin_count,
            "highest_badge_tier": user.highest_badge_tier,
            "has_badge": user.has_badge,
            "tier_name": get_tier_name(user.highest_badge_tier),
            "current_boost": get_checkin_boost(user.highest_badge_tier),
            "rank": user.rank,
            "last_checkin": user.last_checkin,
            "points_recalculated_at": user.points_recalculated_at,
        }
    
    async def get_user_badges(self, address: str) -> List[Dict[str, Any]]:
        address = normalize_address(address)
        result = await self.db.execute(
            select(Badge).where(Badge.owner == address).order_by(Badge.minted_at, Badge.token_id)
        )
        return [
            {
                "token_id": badge.token_id,
                "tier": badge.tier,
                "tier_name": get_tier_name(badge.tier),
                "minted_at": badge.minted_at,
                "transaction_hash": badge.transaction_hash,
                "referrer": badge.referrer,
            }
            for badge in result.scalars().all()
        ]
    
    async def get_checkin_history(self, address: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        address = normalize_address(address)
        limit, offset = validate_pagination(limit, offset)
        result = await self.db.execute(
            select(Checkin)
            .where(Checkin.address == address)
            .order_by(Checkin.block_timestamp.desc(), Checkin.checkin_number.desc())
            .limit(limit)
            .offset(offset)
        )
        return [
            {
                "checkin_number": checkin.checkin_number,
                "timestamp": checkin.block_timestamp,
                "points": checkin.points,
                "boost": checkin.boost,
                "tier_at_checkin": checkin.tier_at_checkin,
                "message": checkin.message,
                "transaction_hash": checkin.transaction_hash,
            }
            for checkin in result.scalars().all()
        ]
    
    async def get_points_history(self, address: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        address = normalize_address(address)
        limit, offset = validate_pagination(limit, offset)
        result = await self.db.execute(
            select(PointsLedgerEntry)
            .where(PointsLedgerEntry.address == address)
            .order_by(PointsLedgerEntry.timestamp.desc(), PointsLedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [
            {
                "points": entry.points,
                "reason": entry.reason,
                "source": entry.source.value,
                "timestamp": entry.timestamp,
                "tier_at_event": entry.tier_at_event,
            }
            for entry in result.scalars().all()
        ]
    
    async def get_leaderboard(self, order_by: str = "points", limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        """Page of users with points, ordered by points or by check-in count."""
        if order_by not in LEADERBOARD_ORDERS:
            raise ValidationError(f"Unknown leaderboard order: {order_by}", {"allowed": list(LEADERBOARD_ORDERS)})
        limit, offset = validate_pagination(limit, offset)
        
        cache_key = f"{LEADERBOARD_CACHE_PREFIX}{order_by}:{limit}:{offset}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached
        
        if order_by == "points":
            ordering = (User.points.desc(), User.checkin_count.desc(), User.last_checkin.desc().nulls_last())
        else:
            ordering = (User.checkin_count.desc(), User.last_checkin.desc().nulls_last(), User.points.desc())
        
        total = (await self.db.execute(
            select(func.count()).select_from(User).where(User.points > 0)
        )).scalar_one()
        result = await self.db.execute(
            select(User).where(User.points > 0).order_by(*ordering, User.address).limit(limit).offset(offset)
        )
        
        entries = []
        for position, user in enumerate(result.scalars().all(), start=offset + 1):
            entries.append({
                "position": position,
                "rank": user.rank,
                "address": user.address,
                "username": user.username,
                "points": user.points,
                "checkin_count": user.checkin_count,
                "highest_badge_tier": user.highest_badge_tier,
                "last_checkin": user.last_checkin.isoformat() if user.last_checkin else None,
            })
        
        page = {"order_by": order_by, "total": total, "limit": limit, "offset": offset, "entries": entries}
        if self.cache is not None:
            await self.cache.set(cache_key, page, self.leaderboard_ttl_seconds)
        return page
    
    async def get_user_rank(self, address: str) -> Dict[str, Any]:
        """Stored rank, or a count-based one when ranks have not been assigned yet."""
        user = await self._require_user(address)
        rank = user.rank
        if rank is None:
            ahead = (await self.db.execute(
                select(func.count()).select_from(User).where(User.points > user.points)
            )).scalar_one()
            rank = ahead + 1
        return {"address": user.address, "rank": rank, "points": user.points}
    
    async def get_badge_stats(self) -> Dict[str, Any]:
        result = await self.db.execute(
            select(Badge.tier, func.count(Badge.id)).group_by(Badge.tier).order_by(Badge.tier)
        )
        by_tier = {tier: count for tier, count in result.all()}
        return {
            "total": sum(by_tier.values()),
            "by_tier": [
                {"tier": tier, "tier_name": get_tier_name(tier), "count": by_tier.get(tier, 0)}
                for tier in range(5)
            ],
        }


async def invalidate_leaderboards(cache: Optional[CacheBackend]) -> None:
    if cache is not None:
        await cache.clear_prefix(LEADERBOARD_CACHE_PREFIX)
