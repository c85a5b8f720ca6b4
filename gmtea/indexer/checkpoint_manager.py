"""
Per-source backfill cursors.

The in-process set of active sources is the only concurrency guard: a second
begin_sync for a source that is already running in this process is refused.
The persisted is_syncing flag is advisory. A crash leaves it set, and the
next begin_sync overwrites it after logging a warning. Two indexer processes
sharing a database are not protected against each other.
"""

from typing import Optional, Set

import structlog
from sqlalchemy import select, update

from gmtea.core.database import SessionScope
from gmtea.models.sync_checkpoint import SyncCheckpoint
from gmtea.utils.formatters import utc_now

logger = structlog.get_logger(__name__)


class CheckpointManager:
    """Loads, advances and resets SyncCheckpoint rows."""
    
    def __init__(self, session_scope: SessionScope, deploy_block: int):
        self.session_scope = session_scope
        self.start_block = deploy_block - 1
        self._active: Set[str] = set()
        self.logger = logger.bind(service="checkpoint_manager")
    
    def is_active(self, source_id: str) -> bool:
        return source_id in self._active
    
    async def get_checkpoint(self, source_id: str, contract_address: str = "") -> SyncCheckpoint:
        """Fetch the checkpoint, creating it one block before deployment."""
        async with self.session_scope() as db:
            checkpoint = await db.get(SyncCheckpoint, source_id)
            if checkpoint is None:
                checkpoint = SyncCheckpoint(
                    source_id=source_id,
                    contract_address=contract_address.lower(),
                    last_processed_block=self.start_block,
                    is_syncing=False,
                    last_sync_time=utc_now(),
                )
                db.add(checkpoint)
                await db.flush()
                self.logger.info(
                    "Created checkpoint",
                    source_id=source_id,
                    start_block=self.start_block
                )
            return checkpoint
    
    async def begin_sync(self, source_id: str, contract_address: str = "") -> bool:
        """
        Mark a source as syncing.
        
        Returns False without touching anything when the source is already
        syncing in this process.
        """
        if source_id in self._active:
            self.logger.info("Sync already in progress, skipping", source_id=source_id)
            return False
        self._active.add(source_id)
        
        try:
            checkpoint = await self.get_checkpoint(source_id, contract_address)
            if checkpoint.is_syncing:
                self.logger.warning(
                    "Stale sync flag found, previous run did not finish",
                    source_id=source_id,
                    last_sync_time=str(checkpoint.last_sync_time)
                )
            await self._set_flag(source_id, True)
        except Exception:
            self._active.discard(source_id)
            raise
        return True
    
    async def advance(self, source_id: str, through_block: int) -> int:
        """
        Move the cursor forward to through_block.
        
        The update only applies when it moves the cursor forward, so the stored
        value never decreases. Returns the stored block afterwards.
        """
        async with self.session_scope() as db:
            await db.execute(
                update(SyncCheckpoint)
                .where(
                    SyncCheckpoint.source_id == source_id,
                    SyncCheckpoint.last_processed_block < through_block,
                )
                .values(last_processed_block=through_block, last_sync_time=utc_now())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                select(SyncCheckpoint.last_processed_block).where(SyncCheckpoint.source_id == source_id)
            )
            return result.scalar_one()
    
    async def end_sync(self, source_id: str) -> None:
        """Clear the flag unconditionally."""
        self._active.discard(source_id)
        await self._set_flag(source_id, False)
    
    async def reset(self, source_id: str, to_block: Optional[int] = None) -> None:
        """Administrative rewind used by hard resets; the only way backwards."""
        block = self.start_block if to_block is None else to_block
        async with self.session_scope() as db:
            checkpoint = await db.get(SyncCheckpoint, source_id)
            if checkpoint is None:
                return
            checkpoint.last_processed_block = block
            checkpoint.is_syncing = False
            checkpoint.last_sync_time = utc_now()
        self.logger.warning("Checkpoint reset", source_id=source_id, to_block=block)
    
    async def _set_flag(self, source_id: str, syncing: bool) -> None:
        async with self.session_scope() as db:
            await db.execute(
                update(SyncCheckpoint)
                .where(SyncCheckpoint.source_id == source_id)
                .values(is_syncing=syncing, last_sync_time=utc_now())
                .execution_options(synchronize_session=False)
            )
