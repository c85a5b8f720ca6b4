"""
Event handlers for referral rewards being added and claimed.
"""

from typing import List

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.indexer.core.types import DecodedEvent, HandlerResult, ProcessOutcome
from gmtea.indexer.decoders import CLAIM_EVENT_NAMES
from gmtea.indexer.handlers.base import BaseEventHandler
from gmtea.models.badge import Badge
from gmtea.models.referral import Referral
from gmtea.models.reward import Reward, RewardKind
from gmtea.models.user import User
from gmtea.services.user_service import ensure_user
from gmtea.utils.formatters import normalize_address, wei_to_ether


async def related_badge_ids(db: AsyncSession, referrer: str) -> List[int]:
    """Token ids of badges minted with this referrer."""
    result = await db.execute(
        select(Badge.token_id).where(Badge.referrer == referrer).order_by(Badge.token_id)
    )
    return list(result.scalars().all())


class RewardHandlers(BaseEventHandler):
    """
    Handles RewardAdded and the reward claim events.
    
    The Reward row is keyed by log position; its side effects on referrals and
    user balances are applied only when that row is new.
    """
    
    name = "reward"
    
    def __init__(self, session_scope, notifier=None):
        super().__init__(session_scope, notifier)
        self._event_handlers = {"RewardAdded": self.handle_reward_added}
        for claim_event in CLAIM_EVENT_NAMES:
            self._event_handlers[claim_event] = self.handle_reward_claimed
    
    async def _reward_exists(self, db: AsyncSession, event: DecodedEvent) -> bool:
        result = await db.execute(
            select(Reward.id).where(
                Reward.transaction_hash == event.transaction_hash,
                Reward.log_index == event.log_index,
            )
        )
        return result.scalar_one_or_none() is not None
    
    def _new_reward(self, event: DecodedEvent, kind: RewardKind, referrer: str, amount_wei: int) -> Reward:
        return Reward(
            kind=kind,
            event_name=event.name,
            referrer=referrer,
            amount=wei_to_ether(amount_wei),
            amount_wei=str(amount_wei),
            event_at=event.block_timestamp,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            related_badges=[],
        )
    
    async def handle_reward_added(self, db: AsyncSession, event: DecodedEvent) -> HandlerResult:
        """Handle RewardAdded event."""
        try:
            referrer = normalize_address(event.args["referrer"])
            amount_wei = int(event.args["amount"])
            tier = int(event.args["tier"])
            
            if await self._reward_exists(db, event):
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            await ensure_user(db, referrer)
            reward = self._new_reward(event, RewardKind.ADDED, referrer, amount_wei)
            reward.tier = tier
            reward.related_badges = await related_badge_ids(db, referrer)
            if not await self._flush_new(db, reward):
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            # Most recent outstanding referral that has not been rewarded at this tier yet
            target = (await db.execute(
                select(Referral)
                .where(
                    Referral.referrer == referrer,
                    Referral.rewards_claimed.is_(False),
                    Referral.badge_tier < tier,
                )
                .order_by(Referral.referred_at.desc(), Referral.id.desc())
                .limit(1)
                .with_for_update()
            )).scalar_one_or_none()
            
            if target is not None:
                target.rewards_amount = (target.rewards_amount or 0.0) + reward.amount
                target.badge_tier = tier
                target.reward_updated_at = event.block_timestamp
                reward.referral_id = target.id
            else:
                self.logger.info("No outstanding referral for reward", referrer=referrer, tier=tier)
            
            await db.execute(
                update(User)
                .where(User.address == referrer)
                .values(
                    pending_rewards=User.pending_rewards + reward.amount,
                    total_referral_rewards=User.total_referral_rewards + reward.amount,
                )
                .execution_options(synchronize_session=False)
            )
            
            self.logger.info(
                "💰 Referral reward added",
                referrer=referrer,
                amount=reward.amount,
                tier=tier,
                referral_id=reward.referral_id
            )
            return HandlerResult(
                ProcessOutcome.CREATED,
                (referrer,),
                notification=(
                    "reward-added",
                    [referrer],
                    {"amount": reward.amount, "tier": tier, "transactionHash": event.transaction_hash},
                ),
            )
        
        except Exception as e:
            self.logger.error("Failed to handle RewardAdded event", tx=event.transaction_hash, error=str(e))
            raise
    
    async def handle_reward_claimed(self, db: AsyncSession, event: DecodedEvent) -> HandlerResult:
        """Handle RewardClaimed and its alias events."""
        try:
            claimant = normalize_address(event.args["user"])
            amount_wei = int(event.args["amount"])
            
            if await self._reward_exists(db, event):
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            await ensure_user(db, claimant)
            reward = self._new_reward(event, RewardKind.CLAIMED, claimant, amount_wei)
            reward.related_badges = await related_badge_ids(db, claimant)
            if not await self._flush_new(db, reward):
                return HandlerResult(ProcessOutcome.DUPLICATE)
            
            claimed = await db.execute(
                update(Referral)
                .where(
                    Referral.referrer == claimant,
                    Referral.rewards_claimed.is_(False),
                    Referral.rewards_amount > 0,
                )
                .values(rewards_claimed=True, reward_updated_at=event.block_timestamp)
                .execution_options(synchronize_session=False)
            )
            
            remaining = User.pending_rewards - reward.amount
            await db.execute(
                update(User)
                .where(User.address == claimant)
                .values(
                    claimed_rewards=User.claimed_rewards + reward.amount,
                    pending_rewards=case((remaining > 0, remaining), else_=0.0),
                    last_reward_claim=event.block_timestamp,
                )
                .execution_options(synchronize_session=False)
            )
            
            self.logger.info(
                "💸 Referral reward claimed",
                user=claimant,
                amount=reward.amount,
                event_name=event.name,
                referrals_claimed=claimed.rowcount
            )
            return HandlerResult(
                ProcessOutcome.CREATED,
                (claimant,),
                notification=(
                    "reward-claimed",
                    [claimant],
                    {"amount": reward.amount, "transactionHash": event.transaction_hash},
                ),
            )
        
        except Exception as e:
            self.logger.error("Failed to handle reward claim event", tx=event.transaction_hash, error=str(e))
            raise
    
    async def reset_store(self, db: AsyncSession) -> None:
        await db.execute(delete(Reward))
        await db.execute(
            update(Referral)
            .values(rewards_amount=0.0, rewards_claimed=False, badge_tier=-1, reward_updated_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(User)
            .values(pending_rewards=0.0, claimed_rewards=0.0, total_referral_rewards=0.0, last_reward_claim=None)
            .execution_options(synchronize_session=False)
        )
