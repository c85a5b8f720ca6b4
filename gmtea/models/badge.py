"""
Badge model - a minted tier badge.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, BigInteger, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class Badge(BaseModel, TimestampMixin):
    """Tier badge minted on chain. Immutable apart from a missing referrer."""
    
    __tablename__ = "badges"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    
    token_id: Mapped[int] = mapped_column(
        BigInteger,
        unique=True,
        comment="On-chain token id"
    )
    
    owner: Mapped[str] = mapped_column(
        String(42),
        comment="Owner address, lower-case"
    )
    
    tier: Mapped[int] = mapped_column(
        Integer,
        comment="Badge tier 0-4"
    )
    
    minted_at: Mapped[datetime] = mapped_column(
        DateTime,
        comment="Block timestamp of the mint"
    )
    
    transaction_hash: Mapped[str] = mapped_column(
        String(66),
        unique=True,
        comment="Mint transaction hash"
    )
    
    block_number: Mapped[int] = mapped_column(
        BigInteger,
        comment="Mint block number"
    )
    
    referrer: Mapped[Optional[str]] = mapped_column(
        String(42),
        comment="Referrer address, lower-case"
    )
    
    __table_args__ = (
        Index("idx_badge_owner_minted", "owner", "minted_at"),
        Index("idx_badge_referrer", "referrer"),
        Index("idx_badge_tier", "tier"),
    )
    
    def __repr__(self) -> str:
        return f"<Badge(token_id={self.token_id}, owner={self.owner}, tier={self.tier})>"
