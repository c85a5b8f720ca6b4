"""
Database models for the GM Tea indexer.

Event-sourced records (badges, check-ins, referrals, rewards), the derived
User projection, the points ledger and per-source sync checkpoints.
"""

from .base import Base, BaseModel, TimestampMixin
from .badge import Badge
from .checkin import Checkin
from .user import User
from .points_ledger import PointsLedgerEntry, PointsSource
from .referral import Referral
from .reward import Reward, RewardKind
from .sync_checkpoint import SyncCheckpoint

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Badge",
    "Checkin",
    "User",
    "PointsLedgerEntry",
    "PointsSource",
    "Referral",
    "Reward",
    "RewardKind",
    "SyncCheckpoint",
]
