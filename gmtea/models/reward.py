"""
Reward model - referral reward additions and claims.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import String, Integer, BigInteger, DateTime, Float, JSON, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class RewardKind(str, Enum):
    ADDED = "added"
    CLAIMED = "claimed"


class Reward(BaseModel, TimestampMixin):
    """A reward event. Keyed by its log position."""
    
    __tablename__ = "rewards"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    
    kind: Mapped[RewardKind] = mapped_column(SQLEnum(RewardKind))
    
    event_name: Mapped[str] = mapped_column(
        String(64),
        comment="Decoded event name"
    )
    
    referrer: Mapped[str] = mapped_column(
        String(42),
        comment="Referrer credited or claiming"
    )
    
    amount: Mapped[float] = mapped_column(
        Float,
        comment="Amount in ether"
    )
    
    amount_wei: Mapped[str] = mapped_column(
        String(80),
        comment="Exact amount in wei"
    )
    
    tier: Mapped[Optional[int]] = mapped_column(Integer)
    
    event_at: Mapped[datetime] = mapped_column(DateTime)
    
    transaction_hash: Mapped[str] = mapped_column(String(66))
    
    log_index: Mapped[int] = mapped_column(Integer)
    
    block_number: Mapped[int] = mapped_column(BigInteger)
    
    related_badges: Mapped[List[int]] = mapped_column(
        JSON,
        default=list,
        comment="Token ids of badges minted with this referrer"
    )
    
    referral_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        comment="Referral the added amount was apportioned to"
    )
    
    __table_args__ = (
        Index("idx_reward_tx_log", "transaction_hash", "log_index", unique=True),
        Index("idx_reward_referrer_kind", "referrer", "kind"),
    )
    
    def __repr__(self) -> str:
        return f"<Reward(kind={self.kind.value}, referrer={self.referrer}, amount={self.amount})>"
