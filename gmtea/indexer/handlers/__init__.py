"""
Event processors, one per event family.
"""

from .base import BaseEventHandler, ZERO_ADDRESS
from .badge_handlers import BadgeHandlers
from .checkin_handlers import CheckinHandlers
from .username_handlers import UsernameHandlers
from .referral_handlers import ReferralHandlers
from .reward_handlers import RewardHandlers

__all__ = [
    "BaseEventHandler",
    "ZERO_ADDRESS",
    "BadgeHandlers",
    "CheckinHandlers",
    "UsernameHandlers",
    "ReferralHandlers",
    "RewardHandlers",
]
