"""
Points reconciliation and rank assignment.

Processors write provisional points as events arrive, in whatever order the
sources deliver them. Reconciliation replays a user's badges and check-ins to
rebuild the tier each check-in was really made at, corrects the check-ins and
their ledger entries, and rewrites the User breakdown from scratch.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.core.exceptions import ReconciliationError
from gmtea.models.badge import Badge
from gmtea.models.checkin import Checkin
from gmtea.models.points_ledger import PointsLedgerEntry, PointsSource
from gmtea.models.user import User
from gmtea.services.points_calculation import (
    NO_BADGE_TIER,
    build_tier_timeline,
    calculate_achievement_points,
    calculate_badge_points,
    calculate_checkin_points,
    effective_tier_at,
    get_checkin_boost,
)
from gmtea.services.user_service import ensure_user
from gmtea.utils.formatters import normalize_address, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class PointsBreakdown:
    """Result of reconciling one address."""
    address: str
    checkin_points: int
    badge_points: int
    other_points: int
    total_points: int
    checkin_count: int
    highest_badge_tier: int
    last_checkin: Optional[datetime]
    previous_total: int
    corrected_checkins: int = 0
    
    @property
    def was_inconsistent(self) -> bool:
        return self.previous_total != self.total_points
    
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PointsService:
    """Reconciliation engine bound to one session."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logger.bind(service="points_service")
    
    async def recalculate_single_user_points(self, address: str) -> PointsBreakdown:
        """Rebuild an address's check-in tiers and points breakdown from its records."""
        address = normalize_address(address)
        if not address:
            raise ReconciliationError("Cannot reconcile an empty address")
        
        badge_rows = (await self.db.execute(
            select(Badge.minted_at, Badge.tier, Badge.token_id)
            .where(Badge.owner == address)
            .order_by(Badge.minted_at, Badge.token_id)
        )).all()
        timeline = build_tier_timeline((row.minted_at, row.tier) for row in badge_rows)
        highest_tier = max((row.tier for row in badge_rows), default=NO_BADGE_TIER)
        
        checkins = (await self.db.execute(
            select(Checkin)
            .where(Checkin.address == address)
            .order_by(Checkin.block_timestamp, Checkin.checkin_number)
        )).scalars().all()
        
        ledger_entries = {
            entry.reference: entry
            for entry in (await self.db.execute(
                select(PointsLedgerEntry).where(
                    PointsLedgerEntry.address == address,
                    PointsLedgerEntry.source == PointsSource.CHECKIN,
                )
            )).scalars().all()
        }
        
        checkin_points = 0
        corrected = 0
        for checkin in checkins:
            tier = effective_tier_at(timeline, checkin.block_timestamp)
            boost = get_checkin_boost(tier)
            points = calculate_checkin_points(tier)
            
            if checkin.tier_at_checkin != tier or checkin.points != points or checkin.boost != boost:
                checkin.tier_at_checkin = tier
                checkin.boost = boost
                checkin.points = points
                corrected += 1
            
            entry = ledger_entries.get(checkin.transaction_hash)
            if entry is None:
                self.db.add(PointsLedgerEntry(
                    address=address,
                    points=points,
                    reason=f"Check-in #{checkin.checkin_number}",
                    source=PointsSource.CHECKIN,
                    timestamp=checkin.block_timestamp,
                    tier_at_event=tier,
                    reference=checkin.transaction_hash,
                ))
            elif entry.points != points or entry.tier_at_event != tier:
                entry.points = points
                entry.tier_at_event = tier
            
            checkin_points += points
        
        await self._reconcile_badge_entries(address, badge_rows, highest_tier)
        
        badge_points = calculate_badge_points(highest_tier)
        other_points = calculate_achievement_points(len(checkins))
        total = checkin_points + badge_points + other_points
        last_checkin = max((c.block_timestamp for c in checkins), default=None)
        
        await ensure_user(self.db, address)
        user = await self.db.get(User, address, populate_existing=True)
        previous_total = user.points or 0
        
        if previous_total != total:
            self.logger.warning(
                "⚠️ Points inconsistency corrected",
                address=address,
                stored=previous_total,
                recomputed=total,
                corrected_checkins=corrected
            )
        
        user.points = total
        user.checkin_points = checkin_points
        user.badge_points = badge_points
        user.other_points = other_points
        user.checkin_count = len(checkins)
        user.last_checkin = last_checkin
        user.highest_badge_tier = highest_tier
        user.points_recalculated_at = utc_now()
        await self.db.flush()
        
        return PointsBreakdown(
            address=address,
            checkin_points=checkin_points,
            badge_points=badge_points,
            other_points=other_points,
            total_points=total,
            checkin_count=len(checkins),
            highest_badge_tier=highest_tier,
            last_checkin=last_checkin,
            previous_total=previous_total,
            corrected_checkins=corrected,
        )
    
    async def _reconcile_badge_entries(self, address: str, badge_rows, highest_tier: int) -> None:
        """
        Keep exactly one badge achievement entry, for the first badge at the highest tier.

        Each tier raise writes its own entry as mints arrive, but only the
        highest tier counts towards badge_points.
        """
        entries = (await self.db.execute(
            select(PointsLedgerEntry).where(
                PointsLedgerEntry.address == address,
                PointsLedgerEntry.source == PointsSource.ACHIEVEMENT,
                PointsLedgerEntry.reference.like("badge:%"),
            )
        )).scalars().all()

        keeper = next((row for row in badge_rows if row.tier == highest_tier), None)
        wanted = f"badge:{keeper.token_id}" if keeper else None

        stale = [entry.id for entry in entries if entry.reference != wanted]
        if stale:
            await self.db.execute(
                delete(PointsLedgerEntry)
                .where(PointsLedgerEntry.id.in_(stale))
                .execution_options(synchronize_session=False)
            )
            self.logger.info("Superseded badge ledger entries removed", address=address, removed=len(stale))

        if keeper is None:
            return

        points = calculate_badge_points(highest_tier)
        current = next((entry for entry in entries if entry.reference == wanted), None)
        if current is None:
            self.db.add(PointsLedgerEntry(
                address=address,
                points=points,
                reason=f"Badge Tier {highest_tier} Earned",
                source=PointsSource.ACHIEVEMENT,
                timestamp=keeper.minted_at,
                tier_at_event=highest_tier,
                reference=wanted,
            ))
        elif current.points != points or current.tier_at_event != highest_tier:
            current.points = points
            current.tier_at_event = highest_tier

    async def list_addresses(self) -> List[str]:
        result = await self.db.execute(select(User.address).order_by(User.address))
        return list(result.scalars().all())
    
    async def recalculate_all_ranks(self, batch_size: int = 500) -> int:
        """
        Reassign ranks by (points, check-ins, latest check-in), all descending.
        
        Only rows whose rank changes are written. Returns how many changed.
        """
        rows = (await self.db.execute(
            select(User.address, User.rank).order_by(
                User.points.desc(),
                User.checkin_count.desc(),
                User.last_checkin.desc().nulls_last(),
                User.address,
            )
        )).all()
        
        changes = [
            {"address": row.address, "rank": position}
            for position, row in enumerate(rows, start=1)
            if row.rank != position
        ]
        
        for offset in range(0, len(changes), batch_size):
            await self.db.execute(update(User), changes[offset:offset + batch_size])
        await self.db.flush()
        
        self.logger.info("Ranks recalculated", users=len(rows), changed=len(changes))
        return len(changes)
