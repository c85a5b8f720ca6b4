"""
Core types for event indexing.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set


class IndexerStatus(Enum):
    """Status of the indexing scheduler."""
    STOPPED = "stopped"
    RUNNING = "running"
    INDEXING = "indexing"
    ERROR = "error"


class ProcessOutcome(Enum):
    """What a processor did with one decoded event."""
    CREATED = "created"
    DUPLICATE = "duplicate"
    PATCHED = "patched"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class DecodedEvent:
    """A log matched by a decoder, with its block time resolved."""
    name: str
    signature: str
    args: Dict[str, Any]
    block_number: int
    transaction_hash: str
    log_index: int
    contract_address: str
    block_timestamp: Optional[datetime] = None
    
    @property
    def key(self) -> tuple:
        return (self.transaction_hash, self.log_index)


@dataclass
class IndexingStats:
    """Statistics for one backfill run of one source."""
    source_id: str
    skipped: bool = False
    logs_fetched: int = 0
    logs_decoded: int = 0
    undecodable: int = 0
    created: int = 0
    duplicates: int = 0
    patched: int = 0
    ignored: int = 0
    errors: int = 0
    windows_completed: int = 0
    windows_failed: int = 0
    narrowed_retries: int = 0
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    last_processed_block: Optional[int] = None
    touched_addresses: Set[str] = field(default_factory=set)
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    
    def record(self, outcome: ProcessOutcome) -> None:
        if outcome is ProcessOutcome.CREATED:
            self.created += 1
        elif outcome is ProcessOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome is ProcessOutcome.PATCHED:
            self.patched += 1
        elif outcome is ProcessOutcome.IGNORED:
            self.ignored += 1
        else:
            self.errors += 1
    
    @property
    def completed(self) -> bool:
        return not self.skipped and self.windows_failed == 0 and self.error is None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "skipped": self.skipped,
            "logs_fetched": self.logs_fetched,
            "logs_decoded": self.logs_decoded,
            "undecodable": self.undecodable,
            "created": self.created,
            "duplicates": self.duplicates,
            "patched": self.patched,
            "ignored": self.ignored,
            "errors": self.errors,
            "windows_completed": self.windows_completed,
            "windows_failed": self.windows_failed,
            "narrowed_retries": self.narrowed_retries,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "last_processed_block": self.last_processed_block,
            "touched_addresses": len(self.touched_addresses),
            "error": self.error,
        }


@dataclass
class HandlerResult:
    """Outcome of one processor call plus what it touched."""
    outcome: ProcessOutcome
    addresses: tuple = ()
    notification: Optional[tuple] = None
