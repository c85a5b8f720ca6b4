"""
Event handlers for badge mints.
"""

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.indexer.core.types import DecodedEvent, HandlerResult, ProcessOutcome
from gmtea.indexer.handlers.base import BaseEventHandler, ZERO_ADDRESS
from gmtea.models.badge import Badge
from gmtea.models.points_ledger import PointsLedgerEntry, PointsSource
from gmtea.models.user import User
from gmtea.services.points_calculation import BADGE_BONUS_BY_TIER, calculate_badge_points, get_tier_name
from gmtea.services.points_service import PointsService
from gmtea.services.user_service import ensure_user, ensure_users
from gmtea.utils.formatters import normalize_address

logger = structlog.get_logger(__name__)


class BadgeHandlers(BaseEventHandler):
    """
    Handles BadgeMinted events.
    
    A new badge can move the owner's tier timeline, so the owner is reconciled
    in the same transaction as the insert.
    """
    
    name = "badge"
    
    def __init__(self, session_scope, notifier=None):
        super().__init__(session_scope, notifier)
        self._event_handlers = {"BadgeMinted": self.handle_badge_minted}
    
    async def handle_badge_minted(self, db: AsyncSession, event: DecodedEvent) -> HandlerResult:
        """Handle BadgeMinted event."""
        try:
            owner = normalize_address(event.args["to"])
            token_id = int(event.args["tokenId"])
            tier = int(event.args["tier"])
            referrer = normalize_address(event.args.get("referrer"))
            if referrer == ZERO_ADDRESS:
                referrer = None
            
            if not 0 <= tier < len(BADGE_BONUS_BY_TIER):
                self.logger.warning("Badge tier out of range", token_id=token_id, tier=tier)
                return HandlerResult(ProcessOutcome.IGNORED)
            
            result = await db.execute(select(Badge).where(Badge.token_id == token_id))
            existing = result.scalar_one_or_none()
            
            if existing:
                if referrer and not existing.referrer:
                    await ensure_user(db, referrer)
                    existing.referrer = referrer
                    self.logger.info("Backfilled badge referrer", token_id=token_id, referrer=referrer)
                    return HandlerResult(ProcessOutcome.PATCHED, (owner,))
                self.logger.debug("Badge already exists", token_id=token_id)
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            await ensure_users(db, [owner, referrer])
            
            badge = Badge(
                token_id=token_id,
                owner=owner,
                tier=tier,
                minted_at=event.block_timestamp,
                transaction_hash=event.transaction_hash,
                block_number=event.block_number,
                referrer=referrer,
            )
            if not await self._flush_new(db, badge):
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            # Only the mint that actually raises the stored tier earns the achievement
            raised = await db.execute(
                update(User)
                .where(User.address == owner, User.highest_badge_tier < tier)
                .values(highest_badge_tier=tier)
                .execution_options(synchronize_session=False)
            )
            if raised.rowcount:
                db.add(PointsLedgerEntry(
                    address=owner,
                    points=calculate_badge_points(tier),
                    reason=f"Badge Tier {tier} Earned",
                    source=PointsSource.ACHIEVEMENT,
                    timestamp=event.block_timestamp,
                    tier_at_event=tier,
                    reference=f"badge:{token_id}",
                ))
            
            breakdown = await PointsService(db).recalculate_single_user_points(owner)
            
            self.logger.info(
                "🏅 Badge minted",
                owner=owner,
                token_id=token_id,
                tier=tier,
                tier_raised=bool(raised.rowcount),
                points=breakdown.total_points
            )
            
            return HandlerResult(
                ProcessOutcome.CREATED,
                (owner,),
                notification=(
                    "badge-mint",
                    [owner],
                    {
                        "tokenId": token_id,
                        "tier": tier,
                        "tierName": get_tier_name(tier),
                        "referrer": referrer,
                        "transactionHash": event.transaction_hash,
                        "points": breakdown.total_points,
                    },
                ),
            )
        
        except Exception as e:
            self.logger.error("Failed to handle BadgeMinted event", tx=event.transaction_hash, error=str(e))
            raise
    
    async def reset_store(self, db: AsyncSession) -> None:
        await db.execute(delete(Badge))
        await db.execute(
            delete(PointsLedgerEntry).where(
                PointsLedgerEntry.source == PointsSource.ACHIEVEMENT,
                PointsLedgerEntry.reference.like("badge:%"),
            )
        )
        await db.execute(
            update(User)
            .values(highest_badge_tier=-1, badge_points=0)
            .execution_options(synchronize_session=False)
        )
