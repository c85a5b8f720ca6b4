"""
Ledger client: chain height, log retrieval and block timestamps.

Every call is raced against a deadline; timeouts, JSON-RPC errors and
transport failures all surface as ProviderError so the backfill engine can
narrow its window and retry.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, List, Optional, Protocol, Sequence

import structlog
from web3 import AsyncWeb3, Web3

from gmtea.core.exceptions import ProviderError

logger = structlog.get_logger(__name__)


@dataclass
class LogEntry:
    """Raw log as returned by eth_getLogs, with hex strings throughout."""
    address: str
    topics: List[str]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int
    
    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0].lower() if self.topics else None
    
    @property
    def key(self) -> tuple:
        """Natural identity of the log on chain."""
        return (self.transaction_hash.lower(), self.log_index)


class LedgerClient(Protocol):
    async def current_height(self) -> int: ...
    
    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[LogEntry]: ...
    
    async def get_block_timestamp(self, number: int) -> int: ...


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return Web3.to_hex(value)


def log_entry_from_rpc(raw: Any) -> LogEntry:
    """Convert a web3 log receipt into a LogEntry."""
    return LogEntry(
        address=str(raw["address"]).lower(),
        topics=[_to_hex(topic).lower() for topic in raw["topics"]],
        data=_to_hex(raw["data"]),
        block_number=int(raw["blockNumber"]),
        transaction_hash=_to_hex(raw["transactionHash"]).lower(),
        log_index=int(raw["logIndex"]),
    )


class Web3LedgerClient:
    """LedgerClient over web3's async HTTP provider."""
    
    def __init__(self, rpc_url: str, timeout_seconds: float = 10.0):
        self.rpc_url = rpc_url
        self.timeout_seconds = timeout_seconds
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": timeout_seconds},
        ))
        self.logger = logger.bind(service="ledger_client")
    
    async def _call(self, operation: str, awaitable: Awaitable, **context) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.warning("Ledger call timed out", operation=operation, **context)
            raise ProviderError(
                f"{operation} timed out after {self.timeout_seconds}s",
                {"operation": operation, **context}
            )
        except Exception as e:
            self.logger.warning("Ledger call failed", operation=operation, error=str(e), **context)
            raise ProviderError(
                f"{operation} failed: {e}",
                {"operation": operation, **context}
            ) from e
    
    async def current_height(self) -> int:
        return int(await self._call("eth_blockNumber", self.w3.eth.block_number))
    
    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[LogEntry]:
        filter_params = {
            "address": Web3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if topics:
            filter_params["topics"] = list(topics)
        
        raw_logs = await self._call(
            "eth_getLogs",
            self.w3.eth.get_logs(filter_params),
            address=address,
            from_block=from_block,
            to_block=to_block,
        )
        try:
            return [log_entry_from_rpc(raw) for raw in raw_logs]
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Malformed eth_getLogs response: {e}",
                {"from_block": from_block, "to_block": to_block}
            ) from e
    
    async def get_block_timestamp(self, number: int) -> int:
        block = await self._call("eth_getBlockByNumber", self.w3.eth.get_block(number), block=number)
        try:
            return int(block["timestamp"])
        except (KeyError, TypeError) as e:
            raise ProviderError(f"Block {number} has no timestamp", {"block": number}) from e
    
    async def close(self) -> None:
        await self.w3.provider.disconnect()
