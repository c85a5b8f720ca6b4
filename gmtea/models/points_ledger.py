"""
PointsLedgerEntry model - append-only audit of points awarded.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class PointsSource(str, Enum):
    """What produced a ledger entry."""
    CHECKIN = "checkin"
    ACHIEVEMENT = "achievement"
    REFERRAL = "referral"
    OTHER = "other"


class PointsLedgerEntry(BaseModel, TimestampMixin):
    """One points award. Referral entries never count towards User.points."""
    
    __tablename__ = "points_ledger"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    
    address: Mapped[str] = mapped_column(String(42))
    
    points: Mapped[int] = mapped_column(
        Integer,
        comment="Magnitude of the award"
    )
    
    reason: Mapped[str] = mapped_column(String(255))
    
    source: Mapped[PointsSource] = mapped_column(
        SQLEnum(PointsSource),
        comment="checkin, achievement, referral or other"
    )
    
    timestamp: Mapped[datetime] = mapped_column(
        DateTime,
        comment="When the underlying event happened"
    )
    
    tier_at_event: Mapped[int] = mapped_column(Integer, default=-1)
    
    reference: Mapped[Optional[str]] = mapped_column(
        String(120),
        comment="Natural key of the producing event"
    )
    
    __table_args__ = (
        Index("idx_ledger_address_source", "address", "source"),
        Index("idx_ledger_source_reference", "source", "reference", unique=True),
        Index("idx_ledger_timestamp", "timestamp"),
    )
    
    def __repr__(self) -> str:
        return f"<PointsLedgerEntry(address={self.address}, points={self.points}, source={self.source.value})>"
