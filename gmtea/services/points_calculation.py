"""
Points rules: boosts, badge bonuses, check-in milestones and the tier timeline.

Everything here is pure so reconciliation and the check-in processor apply the
same arithmetic.
"""

import math
from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

BASE_CHECKIN_POINTS = 10
NO_BADGE_TIER = -1

# Multiplier applied to base check-in points, by effective tier
BOOST_BY_TIER = {
    NO_BADGE_TIER: 1.0,
    0: 1.1,
    1: 1.2,
    2: 1.3,
    3: 1.4,
    4: 1.5,
}

# One-off bonus for the highest tier ever minted
BADGE_BONUS_BY_TIER = [20, 30, 50, 70, 100]

# (check-in count threshold, bonus); cumulative
CHECKIN_MILESTONES: List[Tuple[int, int]] = [
    (1, 50),
    (7, 50),
    (50, 50),
    (100, 200),
]

TIER_NAMES = ["Common", "Uncommon", "Rare", "Epic", "Legendary"]

EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class TierChange:
    """Point in time from which a user's effective tier applies."""
    timestamp: datetime
    tier: int


def get_checkin_boost(tier: Optional[int]) -> float:
    """Boost for a tier; unknown or missing tiers get no boost."""
    if tier is None:
        return 1.0
    return BOOST_BY_TIER.get(tier, 1.0)


def calculate_checkin_points(tier: Optional[int]) -> int:
    return math.floor(BASE_CHECKIN_POINTS * get_checkin_boost(tier))


def calculate_badge_points(highest_tier: Optional[int]) -> int:
    if highest_tier is None or highest_tier < 0 or highest_tier >= len(BADGE_BONUS_BY_TIER):
        return 0
    return BADGE_BONUS_BY_TIER[highest_tier]


def calculate_achievement_points(checkin_count: int) -> int:
    return sum(bonus for threshold, bonus in CHECKIN_MILESTONES if checkin_count >= threshold)


def get_tier_name(tier: int) -> str:
    if 0 <= tier < len(TIER_NAMES):
        return TIER_NAMES[tier]
    return "None"


def build_tier_timeline(mints: Iterable[Tuple[datetime, int]]) -> List[TierChange]:
    """
    Build the effective tier timeline from (minted_at, tier) pairs.
    
    Mints are taken in time order and an entry is added only when the tier
    beats everything minted before it, so the timeline is strictly
    increasing in tier even when the mints are not.
    """
    timeline = [TierChange(EPOCH, NO_BADGE_TIER)]
    running_max = NO_BADGE_TIER
    for minted_at, tier in sorted(mints, key=lambda mint: mint[0]):
        if tier > running_max:
            running_max = tier
            timeline.append(TierChange(minted_at, tier))
    return timeline


def effective_tier_at(timeline: Sequence[TierChange], moment: datetime) -> int:
    """Tier of the latest timeline entry at or before the moment."""
    position = bisect_right([change.timestamp for change in timeline], moment)
    if position == 0:
        return NO_BADGE_TIER
    return timeline[position - 1].tier
