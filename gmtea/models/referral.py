"""
Referral model - who brought whom, and the reward apportioned to it.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Boolean, Float, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class Referral(BaseModel, TimestampMixin):
    """A recorded referral. Each referee has at most one referrer."""
    
    __tablename__ = "referrals"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    
    referrer: Mapped[str] = mapped_column(String(42))
    
    referee: Mapped[str] = mapped_column(
        String(42),
        unique=True,
        comment="Referred address"
    )
    
    transaction_hash: Mapped[str] = mapped_column(String(66))
    
    referred_at: Mapped[datetime] = mapped_column(DateTime)
    
    rewards_claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    
    rewards_amount: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        comment="Reward apportioned to this referral, in ether"
    )
    
    badge_tier: Mapped[int] = mapped_column(
        Integer,
        default=-1,
        comment="Highest reward tier applied to this referral"
    )
    
    reward_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    
    __table_args__ = (
        Index("idx_referral_referrer_claimed", "referrer", "rewards_claimed"),
    )
    
    def __repr__(self) -> str:
        return f"<Referral(referrer={self.referrer}, referee={self.referee})>"
