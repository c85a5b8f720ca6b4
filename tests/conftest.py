"""
Shared fixtures: an in-memory database, a scripted ledger and log builders.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Set

import pytest
import pytest_asyncio
from eth_abi import encode
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from web3 import Web3

from gmtea.core.database import build_session_scope
from gmtea.core.exceptions import ProviderError
from gmtea.indexer.core.types import DecodedEvent
from gmtea.indexer.decoders import EventDecoder
from gmtea.models import Base
from gmtea.services.ledger_client import LogEntry
from gmtea.utils.formatters import from_unix

CHECKIN_CONTRACT = "0x" + "c1" * 20
BADGE_CONTRACT = "0x" + "b2" * 20
USERNAME_CONTRACT = "0x" + "d3" * 20
REFERRAL_CONTRACT = "0x" + "e4" * 20

ALICE = "0x" + "a1" * 20
BOB = "0x" + "a2" * 20
CAROL = "0x" + "a3" * 20
DAVE = "0x" + "a4" * 20

DEPLOY_BLOCK = 1000
GENESIS_TIME = 1_700_000_000
BLOCK_SECONDS = 2


def block_time(block_number: int) -> int:
    return GENESIS_TIME + block_number * BLOCK_SECONDS


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_log(
    decoder: EventDecoder,
    contract: str,
    block_number: int,
    tx: str,
    log_index: int = 0,
    **args,
) -> LogEntry:
    """Encode a log exactly as eth_getLogs would return it."""
    topics = [decoder.topic]
    for event_input in decoder.inputs:
        if event_input.indexed:
            topics.append(Web3.to_hex(encode([event_input.abi_type], [args[event_input.name]])))
    data_inputs = [i for i in decoder.inputs if not i.indexed]
    data = encode([i.abi_type for i in data_inputs], [args[i.name] for i in data_inputs])
    return LogEntry(
        address=contract.lower(),
        topics=topics,
        data=Web3.to_hex(data),
        block_number=block_number,
        transaction_hash=tx,
        log_index=log_index,
    )


def make_event(
    name: str,
    args: Dict,
    block_number: int = DEPLOY_BLOCK,
    tx: Optional[str] = None,
    log_index: int = 0,
    at: Optional[datetime] = None,
    contract: str = CHECKIN_CONTRACT,
) -> DecodedEvent:
    """A decoded event for calling processors directly."""
    return DecodedEvent(
        name=name,
        signature=name,
        args=args,
        block_number=block_number,
        transaction_hash=tx or tx_hash(block_number * 1000 + log_index),
        log_index=log_index,
        contract_address=contract,
        block_timestamp=at or from_unix(block_time(block_number)),
    )


class FakeLedgerClient:
    """Ledger serving scripted logs, with programmable failures and call recording."""
    
    def __init__(self, height: int = DEPLOY_BLOCK):
        self.height = height
        self.logs: List[LogEntry] = []
        self.fail_when: Callable[[int, int], bool] = lambda start, end: False
        self.failing_topics: Set[str] = set()
        self.height_error: Optional[Exception] = None
        self.calls: List[tuple] = []
        self.timestamp_calls: List[int] = []
    
    def add(self, *logs: LogEntry) -> None:
        self.logs.extend(logs)
    
    async def current_height(self) -> int:
        if self.height_error is not None:
            raise self.height_error
        return self.height
    
    async def get_logs(self, address: str, topics: Sequence[Optional[str]], from_block: int, to_block: int) -> List[LogEntry]:
        self.calls.append((tuple(topics), from_block, to_block))
        if self.fail_when(from_block, to_block):
            raise ProviderError("query returned more than 10000 results", {"from": from_block, "to": to_block})
        if topics and topics[0] in self.failing_topics:
            raise ProviderError("topic filter rejected", {"topic": topics[0]})
        return [
            log for log in self.logs
            if log.address == address.lower()
            and from_block <= log.block_number <= to_block
            and (not topics or log.topic0 == topics[0])
        ]
    
    async def get_block_timestamp(self, number: int) -> int:
        self.timestamp_calls.append(number)
        return block_time(number)
    
    async def close(self) -> None:
        pass
    
    def ranges(self) -> List[tuple]:
        return [(start, end) for _, start, end in self.calls]


class RecordingSink:
    """Notification sink that keeps what it was sent."""
    
    def __init__(self):
        self.sent: List[tuple] = []
    
    async def send(self, event_type, addresses, payload) -> None:
        self.sent.append((event_type, list(addresses), payload))
    
    def types(self) -> List[str]:
        return [event_type for event_type, _, _ in self.sent]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def session_scope(session_maker):
    """
    Transactional scope over the shared in-memory connection.
    
    Scopes are serialized because every session shares one SQLite connection.
    """
    lock = asyncio.Lock()
    inner = build_session_scope(session_maker)
    
    @asynccontextmanager
    async def scope():
        async with lock:
            async with inner() as session:
                yield session
    
    return scope


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def days():
    """Datetime helper: days(n) is n days after a fixed start."""
    start = datetime(2025, 3, 1, 12, 0, 0)
    
    def at(n: float) -> datetime:
        return start + timedelta(days=n)
    
    return at
