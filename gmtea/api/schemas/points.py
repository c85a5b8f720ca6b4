"""
Schemas for points, badges, check-ins and leaderboards.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PointsBreakdown(BaseModel):
    address: str
    username: Optional[str] = None
    total_points: int
    checkin_points: int
    badge_points: int
    other_points: int
    referral_points: int = Field(description="Informational, not part of total_points")
    checkin_count: int
    has_badge: bool
    highest_badge_tier: int
    tier_name: str
    current_boost: float
    rank: Optional[int] = None
    last_checkin: Optional[datetime] = None
    points_recalculated_at: Optional[datetime] = None


class BadgeEntry(BaseModel):
    token_id: int
    tier: int
    tier_name: str
    minted_at: datetime
    transaction_hash: str
    referrer: Optional[str] = None


class CheckinEntry(BaseModel):
    checkin_number: int
    timestamp: datetime
    points: int
    boost: float
    tier_at_checkin: int
    message: Optional[str] = None
    transaction_hash: str


class PointsHistoryEntry(BaseModel):
    points: int
    reason: str
    source: str
    timestamp: datetime
    tier_at_event: int


class LeaderboardEntry(BaseModel):
    position: int
    rank: Optional[int] = None
    address: str
    username: Optional[str] = None
    points: int
    checkin_count: int
    highest_badge_tier: int
    last_checkin: Optional[str] = None


class LeaderboardPage(BaseModel):
    order_by: str
    total: int
    limit: int
    offset: int
    entries: List[LeaderboardEntry]


class UserRank(BaseModel):
    address: str
    rank: int
    points: int


class ReindexRequest(BaseModel):
    source: Optional[str] = Field(default=None, description="Source name; all sources when omitted")


class RecalculateRequest(BaseModel):
    address: Optional[str] = Field(default=None, description="Single address; all users when omitted")


class RewardSyncRequest(BaseModel):
    address: str


class IntervalRequest(BaseModel):
    minutes: float = Field(gt=0)
