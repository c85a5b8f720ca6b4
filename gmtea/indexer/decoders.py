"""
Prioritized event decoders.

A decoder knows one event signature. Given a raw log it either returns the
decoded event or None, meaning "not mine"; a DecoderChain asks its decoders
in order and the first match wins. Contract upgrades that changed an event's
argument types are handled by listing each signature variant as its own
decoder under the same event name.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError as AbiDecodingError
from hexbytes import HexBytes
from web3 import Web3

from gmtea.core.exceptions import DecodingError
from gmtea.indexer.core.types import DecodedEvent
from gmtea.services.ledger_client import LogEntry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EventInput:
    name: str
    abi_type: str
    indexed: bool = False


class EventDecoder:
    """Decoder for a single event signature."""
    
    def __init__(self, name: str, inputs: Sequence[EventInput]):
        self.name = name
        self.inputs = list(inputs)
        self.signature = f"{name}({','.join(i.abi_type for i in self.inputs)})"
        self.topic = Web3.to_hex(Web3.keccak(text=self.signature)).lower()
        self._indexed = [i for i in self.inputs if i.indexed]
        self._data = [i for i in self.inputs if not i.indexed]
    
    def matches(self, log: LogEntry) -> bool:
        return log.topic0 == self.topic and len(log.topics) == len(self._indexed) + 1
    
    def decode_args(self, log: LogEntry) -> Dict[str, Any]:
        """Decode indexed topics and data of a matching log. Raises DecodingError."""
        try:
            args: Dict[str, Any] = {}
            for event_input, topic in zip(self._indexed, log.topics[1:]):
                args[event_input.name] = abi_decode([event_input.abi_type], HexBytes(topic))[0]
            
            values = abi_decode([i.abi_type for i in self._data], HexBytes(log.data or "0x"))
            for event_input, value in zip(self._data, values):
                args[event_input.name] = value
        except (AbiDecodingError, ValueError, TypeError, OverflowError) as e:
            raise DecodingError(
                f"Cannot decode {self.signature}",
                {"transaction_hash": log.transaction_hash, "log_index": log.log_index, "error": str(e)}
            ) from e
        
        for key, value in args.items():
            if isinstance(value, str) and value.startswith("0x") and len(value) == 42:
                args[key] = value.lower()
        return args
    
    def decode(self, log: LogEntry) -> Optional[DecodedEvent]:
        if not self.matches(log):
            return None
        try:
            args = self.decode_args(log)
        except DecodingError as e:
            logger.debug("Log matched topic but failed to decode", signature=self.signature, **e.details)
            return None
        
        return DecodedEvent(
            name=self.name,
            signature=self.signature,
            args=args,
            block_number=log.block_number,
            transaction_hash=log.transaction_hash,
            log_index=log.log_index,
            contract_address=log.address,
        )
    
    def __repr__(self) -> str:
        return f"<EventDecoder({self.signature})>"


class DecoderChain:
    """Ordered decoders; the first one that recognises a log wins."""
    
    def __init__(self, decoders: Sequence[EventDecoder]):
        self.decoders = list(decoders)
    
    @property
    def topics(self) -> List[str]:
        """Candidate topic0 values in priority order, without repeats."""
        seen: List[str] = []
        for decoder in self.decoders:
            if decoder.topic not in seen:
                seen.append(decoder.topic)
        return seen
    
    @property
    def event_names(self) -> List[str]:
        names: List[str] = []
        for decoder in self.decoders:
            if decoder.name not in names:
                names.append(decoder.name)
        return names
    
    def decode(self, log: LogEntry) -> Optional[DecodedEvent]:
        for decoder in self.decoders:
            event = decoder.decode(log)
            if event is not None:
                return event
        return None


def _address(name: str, indexed: bool = False) -> EventInput:
    return EventInput(name, "address", indexed)


def _uint(name: str, bits: int = 256, indexed: bool = False) -> EventInput:
    return EventInput(name, f"uint{bits}", indexed)


def _string(name: str) -> EventInput:
    return EventInput(name, "string")


# Known contract events
BADGE_MINTED = EventDecoder("BadgeMinted", [
    _address("to", indexed=True),
    _uint("tokenId", indexed=True),
    _uint("tier", bits=8),
    _address("referrer"),
])
BADGE_MINTED_WIDE_TIER = EventDecoder("BadgeMinted", [
    _address("to", indexed=True),
    _uint("tokenId", indexed=True),
    _uint("tier"),
    _address("referrer"),
])

CHECKIN_COMPLETED = EventDecoder("CheckinCompleted", [
    _address("user", indexed=True),
    _uint("timestamp"),
    _string("message"),
    _uint("count"),
])

USERNAME_REGISTERED = EventDecoder("UsernameRegistered", [
    _address("user", indexed=True),
    _string("username"),
])
USERNAME_CHANGED = EventDecoder("UsernameChanged", [
    _address("user", indexed=True),
    _string("oldUsername"),
    _string("newUsername"),
])

REFERRAL_RECORDED = EventDecoder("ReferralRecorded", [
    _address("referrer", indexed=True),
    _address("referee", indexed=True),
])

REWARD_ADDED = EventDecoder("RewardAdded", [
    _address("referrer", indexed=True),
    _uint("amount"),
    _uint("tier", bits=8),
])
REWARD_CLAIMED = EventDecoder("RewardClaimed", [
    _address("user", indexed=True),
    _uint("amount"),
])
REFERRAL_REWARD_CLAIMED = EventDecoder("ReferralRewardClaimed", [
    _address("user", indexed=True),
    _uint("amount"),
])
REWARD_SENT = EventDecoder("RewardSent", [
    _address("user", indexed=True),
    _uint("amount"),
])
REFERRAL_REWARD = EventDecoder("ReferralReward", [
    _address("user", indexed=True),
    _uint("amount"),
])

CLAIM_EVENT_NAMES = frozenset({"RewardClaimed", "ReferralRewardClaimed", "RewardSent", "ReferralReward"})


def badge_decoders() -> DecoderChain:
    return DecoderChain([BADGE_MINTED, BADGE_MINTED_WIDE_TIER])


def checkin_decoders() -> DecoderChain:
    return DecoderChain([CHECKIN_COMPLETED])


def username_decoders() -> DecoderChain:
    return DecoderChain([USERNAME_REGISTERED, USERNAME_CHANGED])


def referral_decoders() -> DecoderChain:
    return DecoderChain([REFERRAL_RECORDED])


def reward_decoders() -> DecoderChain:
    return DecoderChain([
        REWARD_ADDED,
        REWARD_CLAIMED,
        REFERRAL_REWARD_CLAIMED,
        REWARD_SENT,
        REFERRAL_REWARD,
    ])
