"""
Event sources: which contract to read, which decoders recognise its logs and
which processor stores them.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.indexer.core.types import DecodedEvent, HandlerResult
from gmtea.indexer.decoders import (
    CLAIM_EVENT_NAMES,
    DecoderChain,
    badge_decoders,
    checkin_decoders,
    referral_decoders,
    reward_decoders,
    username_decoders,
)


class EventHandler(Protocol):
    name: str
    
    async def handle(self, event: DecodedEvent) -> HandlerResult: ...
    
    async def reset_store(self, db: AsyncSession) -> None: ...


@dataclass
class EventSource:
    """One contract/event family indexed under its own checkpoint."""
    name: str
    contract_address: str
    decoders: DecoderChain
    handler: EventHandler
    fallback_event_names: FrozenSet[str] = field(default_factory=frozenset)
    
    @property
    def source_id(self) -> str:
        return f"{self.contract_address.lower()}:{self.name}"
    
    @property
    def allows_generic_scan(self) -> bool:
        return bool(self.fallback_event_names)


@dataclass
class SourceAddresses:
    checkin: Optional[str] = None
    badge: Optional[str] = None
    username: Optional[str] = None
    referral: Optional[str] = None
    
    @classmethod
    def from_settings(cls, settings) -> "SourceAddresses":
        return cls(
            checkin=settings.checkin_contract_address,
            badge=settings.badge_contract_address,
            username=settings.username_contract_address,
            referral=settings.referral_contract_address,
        )


def build_sources(addresses: SourceAddresses, handlers) -> List[EventSource]:
    """
    Sources in the order the scheduler runs them.
    
    `handlers` maps source name to processor. Sources without a configured
    contract address are left out.
    """
    candidates = [
        EventSource("checkin", addresses.checkin, checkin_decoders(), handlers["checkin"]),
        EventSource(
            "badge",
            addresses.badge,
            badge_decoders(),
            handlers["badge"],
            fallback_event_names=frozenset({"BadgeMinted"}),
        ),
        EventSource("username", addresses.username, username_decoders(), handlers["username"]),
        EventSource("referral", addresses.referral, referral_decoders(), handlers["referral"]),
        EventSource(
            "reward",
            addresses.referral,
            reward_decoders(),
            handlers["reward"],
            fallback_event_names=frozenset({"RewardAdded"} | CLAIM_EVENT_NAMES),
        ),
    ]
    return [source for source in candidates if source.contract_address]
