"""
Event handlers for check-ins.
"""

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.indexer.core.types import DecodedEvent, HandlerResult, ProcessOutcome
from gmtea.indexer.handlers.base import BaseEventHandler
from gmtea.models.checkin import Checkin
from gmtea.models.points_ledger import PointsLedgerEntry, PointsSource
from gmtea.models.user import User
from gmtea.services.points_calculation import (
    CHECKIN_MILESTONES,
    calculate_checkin_points,
    get_checkin_boost,
)
from gmtea.services.user_service import ensure_user
from gmtea.utils.formatters import from_unix, normalize_address


class CheckinHandlers(BaseEventHandler):
    """
    Handles CheckinCompleted events.
    
    Points are provisional: they use the tier stored on the user right now,
    which reconciliation corrects if a badge for an earlier moment shows up
    later.
    """
    
    name = "checkin"
    
    def __init__(self, session_scope, notifier=None):
        super().__init__(session_scope, notifier)
        self._event_handlers = {"CheckinCompleted": self.handle_checkin_completed}
    
    async def handle_checkin_completed(self, db: AsyncSession, event: DecodedEvent) -> HandlerResult:
        """Handle CheckinCompleted event."""
        try:
            address = normalize_address(event.args["user"])
            checkin_number = int(event.args["count"])
            event_time = int(event.args.get("timestamp") or 0)
            checked_in_at = from_unix(event_time) if event_time > 0 else event.block_timestamp
            
            result = await db.execute(
                select(Checkin.id).where(Checkin.transaction_hash == event.transaction_hash)
            )
            if result.scalar_one_or_none() is not None:
                self.logger.debug("Check-in already exists", tx=event.transaction_hash)
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            await ensure_user(db, address)
            tier = (await db.execute(
                select(User.highest_badge_tier).where(User.address == address)
            )).scalar_one()
            boost = get_checkin_boost(tier)
            points = calculate_checkin_points(tier)
            
            checkin = Checkin(
                address=address,
                checkin_number=checkin_number,
                transaction_hash=event.transaction_hash,
                block_number=event.block_number,
                block_timestamp=checked_in_at,
                points=points,
                boost=boost,
                tier_at_checkin=tier,
                message=event.args.get("message") or "",
            )
            if not await self._flush_new(db, checkin):
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            await db.execute(
                update(User)
                .where(User.address == address)
                .values(
                    checkin_count=User.checkin_count + 1,
                    points=User.points + points,
                    checkin_points=User.checkin_points + points,
                    last_checkin=case(
                        (or_(User.last_checkin.is_(None), User.last_checkin < checked_in_at), checked_in_at),
                        else_=User.last_checkin,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            db.add(PointsLedgerEntry(
                address=address,
                points=points,
                reason=f"Check-in #{checkin_number}",
                source=PointsSource.CHECKIN,
                timestamp=checked_in_at,
                tier_at_event=tier,
                reference=event.transaction_hash,
            ))
            
            milestone_points = await self._award_milestone(db, address, checked_in_at, tier)
            
            self.logger.info(
                "✅ Check-in recorded",
                address=address,
                checkin_number=checkin_number,
                tier=tier,
                points=points,
                milestone_points=milestone_points
            )
            
            return HandlerResult(
                ProcessOutcome.CREATED,
                (address,),
                notification=(
                    "checkin",
                    [address],
                    {
                        "checkinNumber": checkin_number,
                        "points": points,
                        "boost": boost,
                        "tier": tier,
                        "transactionHash": event.transaction_hash,
                        "timestamp": checked_in_at.isoformat(),
                    },
                ),
            )
        
        except Exception as e:
            self.logger.error("Failed to handle CheckinCompleted event", tx=event.transaction_hash, error=str(e))
            raise
    
    async def _award_milestone(self, db: AsyncSession, address: str, checked_in_at, tier: int) -> int:
        """Credit the milestone bonus when this check-in reached a threshold."""
        count = (await db.execute(
            select(User.checkin_count).where(User.address == address)
        )).scalar_one()
        
        awarded = 0
        for threshold, bonus in CHECKIN_MILESTONES:
            if count != threshold:
                continue
            reference = f"milestone:{address}:{threshold}"
            already_awarded = (await db.execute(
                select(PointsLedgerEntry.id).where(
                    PointsLedgerEntry.source == PointsSource.ACHIEVEMENT,
                    PointsLedgerEntry.reference == reference,
                )
            )).scalar_one_or_none()
            if already_awarded is not None:
                continue
            db.add(PointsLedgerEntry(
                address=address,
                points=bonus,
                reason=f"Check-in milestone: {threshold}",
                source=PointsSource.ACHIEVEMENT,
                timestamp=checked_in_at,
                tier_at_event=tier,
                reference=reference,
            ))
            awarded += bonus
        
        if awarded:
            await db.execute(
                update(User)
                .where(User.address == address)
                .values(points=User.points + awarded, other_points=User.other_points + awarded)
                .execution_options(synchronize_session=False)
            )
        return awarded
    
    async def reset_store(self, db: AsyncSession) -> None:
        await db.execute(delete(Checkin))
        await db.execute(delete(PointsLedgerEntry).where(PointsLedgerEntry.source == PointsSource.CHECKIN))
        await db.execute(
            delete(PointsLedgerEntry).where(
                PointsLedgerEntry.source == PointsSource.ACHIEVEMENT,
                PointsLedgerEntry.reference.like("milestone:%"),
            )
        )
        await db.execute(
            update(User)
            .values(
                checkin_count=0,
                points=User.badge_points,
                checkin_points=0,
                other_points=0,
                last_checkin=None,
            )
            .execution_options(synchronize_session=False)
        )
