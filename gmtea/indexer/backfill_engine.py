"""
Chunked backfill for a single event source.

The block range between the checkpoint and the chain head is walked in fixed
windows. A window whose logs cannot be fetched is retried as smaller
sub-windows, down to a floor; below it the window is abandoned and the
checkpoint stays where it was so the next run picks it up again. The
checkpoint only moves after every log of a window has been handed to its
processor, and processors are idempotent, so re-reading a window is safe.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from gmtea.core.config import IndexerConfig
from gmtea.core.exceptions import ConfigurationError, ProviderError
from gmtea.indexer.checkpoint_manager import CheckpointManager
from gmtea.indexer.core.types import DecodedEvent, IndexingStats, ProcessOutcome
from gmtea.indexer.sources import EventSource
from gmtea.services.cache import CacheBackend, InMemoryTTLCache
from gmtea.services.ledger_client import LedgerClient, LogEntry
from gmtea.utils.formatters import from_unix, utc_now

logger = structlog.get_logger(__name__)


class BackfillEngine:
    """Drives windows, narrowing and batched processing for one source at a time."""
    
    def __init__(
        self,
        ledger: LedgerClient,
        checkpoints: CheckpointManager,
        config: IndexerConfig,
        cache: Optional[CacheBackend] = None,
    ):
        if config.window_divisor < 2:
            raise ConfigurationError("window_divisor must be at least 2", {"window_divisor": config.window_divisor})
        if config.window_size < 1 or config.processing_batch_size < 1:
            raise ConfigurationError("window_size and processing_batch_size must be positive")
        
        self.ledger = ledger
        self.checkpoints = checkpoints
        self.config = config
        self.cache = cache if cache is not None else InMemoryTTLCache()
        self.logger = logger.bind(service="backfill_engine")
    
    async def run(self, source: EventSource) -> IndexingStats:
        """Index a source from its checkpoint up to the current chain head."""
        stats = IndexingStats(source_id=source.source_id, start_time=utc_now())
        log = self.logger.bind(source_id=source.source_id)
        
        if not await self.checkpoints.begin_sync(source.source_id, source.contract_address):
            stats.skipped = True
            return stats
        
        try:
            checkpoint = await self.checkpoints.get_checkpoint(source.source_id, source.contract_address)
            from_block = checkpoint.last_processed_block + 1
            to_block = await self.ledger.current_height()
            stats.from_block, stats.to_block = from_block, to_block
            stats.last_processed_block = checkpoint.last_processed_block
            
            if from_block > to_block:
                log.debug("Source is up to date", block=checkpoint.last_processed_block)
                return stats
            
            log.info("🔄 Backfill started", from_block=from_block, to_block=to_block)
            
            window_size = self.config.window_size
            for window_start in range(from_block, to_block + 1, window_size):
                window_end = min(window_start + window_size - 1, to_block)
                
                if not await self._process_range(source, window_start, window_end, window_size, stats):
                    stats.windows_failed += 1
                    log.error(
                        "Window abandoned, checkpoint left in place",
                        from_block=window_start,
                        to_block=window_end,
                        checkpoint=stats.last_processed_block
                    )
                    break
                
                stats.last_processed_block = await self.checkpoints.advance(source.source_id, window_end)
                stats.windows_completed += 1
            
            log.info("✅ Backfill finished", **stats.to_dict())
        except ProviderError as e:
            stats.error = e.message
            log.error("Backfill aborted by ledger error", error=e.message)
        finally:
            await self.checkpoints.end_sync(source.source_id)
            stats.end_time = utc_now()
        
        return stats
    
    async def _process_range(
        self,
        source: EventSource,
        start: int,
        end: int,
        window_size: int,
        stats: IndexingStats,
    ) -> bool:
        """
        Fetch and process one range, narrowing on ledger failure.
        
        Each retry level divides the window by window_divisor and stops once
        the window is at or below min_window_size, so the depth is bounded by
        log_divisor(window_size / min_window_size) + 1.
        """
        try:
            events = await self._load_events(source, start, end, stats)
        except ProviderError as e:
            if window_size > self.config.min_window_size:
                sub_size = max(window_size // self.config.window_divisor, 1)
                stats.narrowed_retries += 1
                self.logger.warning(
                    "Window failed, retrying in smaller windows",
                    source_id=source.source_id,
                    from_block=start,
                    to_block=end,
                    sub_window=sub_size,
                    error=e.message
                )
                for sub_start in range(start, end + 1, sub_size):
                    sub_end = min(sub_start + sub_size - 1, end)
                    if not await self._process_range(source, sub_start, sub_end, sub_size, stats):
                        return False
                return True
            
            self.logger.error(
                "Window failed at minimum size",
                source_id=source.source_id,
                from_block=start,
                to_block=end,
                error=e.message
            )
            return False
        
        await self._process_events(source, events, stats)
        return True
    
    async def _load_events(
        self,
        source: EventSource,
        start: int,
        end: int,
        stats: IndexingStats,
    ) -> List[DecodedEvent]:
        """Fetch, decode and timestamp the logs of a range. Any ledger error fails the range."""
        logs = await self._fetch_logs(source, start, end)
        stats.logs_fetched += len(logs)
        
        events = []
        for log in logs:
            event = source.decoders.decode(log)
            if event is None:
                self.logger.warning(
                    "Log under a known topic could not be decoded, skipping",
                    source_id=source.source_id,
                    tx=log.transaction_hash,
                    log_index=log.log_index,
                    topic=log.topic0
                )
                stats.undecodable += 1
                continue
            events.append(event)
        stats.logs_decoded += len(events)
        
        timestamps = await self._resolve_timestamps({event.block_number for event in events})
        for event in events:
            event.block_timestamp = timestamps[event.block_number]
        return events
    
    async def _fetch_logs(self, source: EventSource, start: int, end: int) -> List[LogEntry]:
        """
        Query each candidate topic, falling back to a scan of every contract log.
        
        A failed topic query is tolerated only when the source names the events
        it accepts from a scan, which then stands in for the failed queries.
        Otherwise the failure fails the range.
        """
        collected: Dict[tuple, LogEntry] = {}
        topic_failed = False
        for topic in source.decoders.topics:
            try:
                logs = await self.ledger.get_logs(source.contract_address, [topic], start, end)
            except ProviderError as e:
                if not source.allows_generic_scan:
                    raise
                topic_failed = True
                self.logger.warning(
                    "Topic query failed",
                    source_id=source.source_id,
                    topic=topic,
                    from_block=start,
                    to_block=end,
                    error=e.message
                )
                continue
            for log in logs:
                collected.setdefault(log.key, log)
        
        if topic_failed:
            for log in await self.ledger.get_logs(source.contract_address, [], start, end):
                event = source.decoders.decode(log)
                if event is not None and event.name in source.fallback_event_names:
                    collected.setdefault(log.key, log)
        
        return sorted(collected.values(), key=lambda log: (log.block_number, log.log_index))
    
    async def _resolve_timestamps(self, block_numbers) -> Dict[int, datetime]:
        resolved: Dict[int, datetime] = {}
        for number in sorted(block_numbers):
            cache_key = f"block_ts:{number}"
            cached = await self.cache.get(cache_key)
            if cached is None:
                cached = await self.ledger.get_block_timestamp(number)
                await self.cache.set(cache_key, cached, self.config.block_timestamp_ttl_seconds)
            resolved[number] = from_unix(cached)
        return resolved
    
    async def _process_events(self, source: EventSource, events: List[DecodedEvent], stats: IndexingStats) -> None:
        """Process in sub-batches; everything inside a sub-batch runs concurrently."""
        batch_size = self.config.processing_batch_size
        for offset in range(0, len(events), batch_size):
            batch = events[offset:offset + batch_size]
            await asyncio.gather(*(self._process_one(source, event, stats) for event in batch))
    
    async def _process_one(self, source: EventSource, event: DecodedEvent, stats: IndexingStats) -> None:
        try:
            result = await source.handler.handle(event)
        except Exception as e:
            stats.record(ProcessOutcome.FAILED)
            self.logger.error(
                "Failed to process event",
                source_id=source.source_id,
                event_name=event.name,
                tx=event.transaction_hash,
                log_index=event.log_index,
                error=str(e),
                exc_info=True
            )
            return
        
        stats.record(result.outcome)
        stats.touched_addresses.update(result.addresses)
