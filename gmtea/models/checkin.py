"""
Checkin model - one on-chain check-in.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, BigInteger, DateTime, Float, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class Checkin(BaseModel, TimestampMixin):
    """A user's check-in with the points it earned at its effective tier."""
    
    __tablename__ = "checkins"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    
    address: Mapped[str] = mapped_column(
        String(42),
        comment="User address, lower-case"
    )
    
    checkin_number: Mapped[int] = mapped_column(
        Integer,
        comment="Sequence number emitted by the contract"
    )
    
    transaction_hash: Mapped[str] = mapped_column(
        String(66),
        unique=True,
        comment="Check-in transaction hash"
    )
    
    block_number: Mapped[int] = mapped_column(BigInteger)
    
    block_timestamp: Mapped[datetime] = mapped_column(
        DateTime,
        comment="Check-in time"
    )
    
    points: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Points awarded after boost"
    )
    
    boost: Mapped[float] = mapped_column(
        Float,
        default=1.0,
        comment="Multiplier applied to base points"
    )
    
    tier_at_checkin: Mapped[int] = mapped_column(
        Integer,
        default=-1,
        comment="Effective badge tier when the check-in happened"
    )
    
    message: Mapped[Optional[str]] = mapped_column(Text)
    
    __table_args__ = (
        UniqueConstraint("address", "checkin_number", name="unique_checkin_number"),
        Index("idx_checkin_address_time", "address", "block_timestamp"),
    )
    
    def __repr__(self) -> str:
        return f"<Checkin(address={self.address}, number={self.checkin_number}, points={self.points})>"
