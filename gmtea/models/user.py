"""
User model - projection rebuilt from badges, check-ins and the points ledger.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, BigInteger, DateTime, Float, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class User(BaseModel, TimestampMixin):
    """Per-address aggregate. Every field except the address is derived."""
    
    __tablename__ = "users"
    
    address: Mapped[str] = mapped_column(
        String(42),
        primary_key=True,
        comment="Wallet address, lower-case"
    )
    
    username: Mapped[Optional[str]] = mapped_column(
        String(64),
        comment="Registered username, lower-case"
    )
    
    username_block: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        comment="Block of the event that set the current username"
    )
    
    username_log_index: Mapped[Optional[int]] = mapped_column(
        Integer,
        comment="Log index of the event that set the current username"
    )
    
    highest_badge_tier: Mapped[int] = mapped_column(
        Integer,
        default=-1,
        comment="Highest tier ever minted, -1 without a badge"
    )
    
    checkin_count: Mapped[int] = mapped_column(Integer, default=0)
    
    # Points
    points: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Grand total, referral ledger entries excluded"
    )
    checkin_points: Mapped[int] = mapped_column(Integer, default=0)
    badge_points: Mapped[int] = mapped_column(Integer, default=0)
    other_points: Mapped[int] = mapped_column(Integer, default=0)
    
    rank: Mapped[Optional[int]] = mapped_column(
        Integer,
        comment="1-based leaderboard position"
    )
    
    last_checkin: Mapped[Optional[datetime]] = mapped_column(DateTime)
    
    # Referral rewards
    referrer: Mapped[Optional[str]] = mapped_column(
        String(42),
        comment="Who referred this user"
    )
    pending_rewards: Mapped[float] = mapped_column(Float, default=0.0)
    claimed_rewards: Mapped[float] = mapped_column(Float, default=0.0)
    total_referral_rewards: Mapped[float] = mapped_column(Float, default=0.0)
    last_reward_claim: Mapped[Optional[datetime]] = mapped_column(DateTime)
    
    points_recalculated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="Last reconciliation of the points breakdown"
    )
    
    __table_args__ = (
        Index("idx_user_leaderboard", "points", "checkin_count"),
        Index("idx_user_checkins", "checkin_count"),
        Index("idx_user_username", "username"),
        Index("idx_user_rank", "rank"),
    )
    
    def __repr__(self) -> str:
        return f"<User(address={self.address}, points={self.points}, rank={self.rank})>"
    
    @property
    def has_badge(self) -> bool:
        return self.highest_badge_tier >= 0
