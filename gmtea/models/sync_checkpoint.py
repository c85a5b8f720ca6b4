"""
SyncCheckpoint model - per-source backfill cursor.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, BigInteger, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class SyncCheckpoint(BaseModel, TimestampMixin):
    """Last fully processed block for one event source."""
    
    __tablename__ = "sync_checkpoints"
    
    source_id: Mapped[str] = mapped_column(
        String(120),
        primary_key=True,
        comment="Event source identifier, <contract>:<source name>"
    )
    
    contract_address: Mapped[str] = mapped_column(
        String(42),
        comment="Contract the source reads logs from"
    )
    
    last_processed_block: Mapped[int] = mapped_column(
        BigInteger,
        comment="Highest block whose logs are fully persisted"
    )
    
    is_syncing: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Advisory in-progress flag"
    )
    
    last_sync_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the checkpoint last moved or the flag last changed"
    )
    
    def __repr__(self) -> str:
        return (
            f"<SyncCheckpoint(source={self.source_id}, block={self.last_processed_block}, "
            f"syncing={self.is_syncing})>"
        )
