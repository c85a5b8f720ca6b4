"""
Event handlers for recorded referrals.
"""

from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.indexer.core.types import DecodedEvent, HandlerResult, ProcessOutcome
from gmtea.indexer.handlers.base import BaseEventHandler, ZERO_ADDRESS
from gmtea.models.points_ledger import PointsLedgerEntry, PointsSource
from gmtea.models.referral import Referral
from gmtea.models.user import User
from gmtea.services.user_service import ensure_users
from gmtea.utils.formatters import normalize_address, short_address


class ReferralHandlers(BaseEventHandler):
    """
    Handles ReferralRecorded events.
    
    The ledger entry written here is informational; referral points never
    count towards User.points.
    """
    
    name = "referral"
    
    def __init__(self, session_scope, notifier=None, referral_points: int = 0):
        super().__init__(session_scope, notifier)
        self.referral_points = referral_points
        self._event_handlers = {"ReferralRecorded": self.handle_referral_recorded}
    
    async def handle_referral_recorded(self, db: AsyncSession, event: DecodedEvent) -> HandlerResult:
        """Handle ReferralRecorded event."""
        try:
            referrer = normalize_address(event.args["referrer"])
            referee = normalize_address(event.args["referee"])
            
            if not referrer or not referee or ZERO_ADDRESS in (referrer, referee) or referrer == referee:
                self.logger.warning("Invalid referral pair", referrer=referrer, referee=referee)
                return HandlerResult(ProcessOutcome.IGNORED)
            
            result = await db.execute(select(Referral).where(Referral.referee == referee))
            existing: Optional[Referral] = result.scalar_one_or_none()
            if existing:
                if existing.referrer != referrer:
                    self.logger.warning(
                        "Referee already referred by someone else",
                        referee=referee,
                        stored_referrer=existing.referrer,
                        event_referrer=referrer
                    )
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            await ensure_users(db, [referrer, referee])
            
            referral = Referral(
                referrer=referrer,
                referee=referee,
                transaction_hash=event.transaction_hash,
                referred_at=event.block_timestamp,
                rewards_claimed=False,
                rewards_amount=0.0,
                badge_tier=-1,
            )
            if not await self._flush_new(db, referral):
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            await db.execute(
                update(User)
                .where(User.address == referee, User.referrer.is_(None))
                .values(referrer=referrer)
                .execution_options(synchronize_session=False)
            )
            db.add(PointsLedgerEntry(
                address=referrer,
                points=self.referral_points,
                reason=f"Referred {short_address(referee)}",
                source=PointsSource.REFERRAL,
                timestamp=event.block_timestamp,
                tier_at_event=-1,
                reference=f"referral:{referee}",
            ))
            
            self.logger.info("🤝 Referral recorded", referrer=referrer, referee=referee)
            return HandlerResult(
                ProcessOutcome.CREATED,
                (referrer, referee),
                notification=(
                    "referral",
                    [referrer, referee],
                    {
                        "referrer": referrer,
                        "referee": referee,
                        "transactionHash": event.transaction_hash,
                    },
                ),
            )
        
        except Exception as e:
            self.logger.error("Failed to handle ReferralRecorded event", tx=event.transaction_hash, error=str(e))
            raise
    
    async def reset_store(self, db: AsyncSession) -> None:
        await db.execute(delete(Referral))
        await db.execute(delete(PointsLedgerEntry).where(PointsLedgerEntry.source == PointsSource.REFERRAL))
        await db.execute(
            update(User).values(referrer=None).execution_options(synchronize_session=False)
        )
