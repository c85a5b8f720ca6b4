"""
Indexing scheduler and administrative operations.

One cycle runs every source's backfill in order, then reconciles addresses
whose check-ins arrived in the cycle and refreshes ranks. Cycles and manual
operations share a lock, so a reindex never overlaps a scheduled run.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, select

from gmtea.core.database import SessionScope
from gmtea.core.exceptions import SchedulerError, UnknownSourceError, ValidationError
from gmtea.indexer.backfill_engine import BackfillEngine
from gmtea.indexer.checkpoint_manager import CheckpointManager
from gmtea.indexer.core.types import IndexerStatus, IndexingStats
from gmtea.indexer.handlers.reward_handlers import related_badge_ids
from gmtea.indexer.sources import EventSource
from gmtea.models.badge import Badge
from gmtea.models.referral import Referral
from gmtea.models.reward import Reward, RewardKind
from gmtea.models.sync_checkpoint import SyncCheckpoint
from gmtea.models.user import User
from gmtea.scheduler.task_scheduler import TaskScheduler
from gmtea.services.cache import CacheBackend
from gmtea.services.notification_service import EventBus
from gmtea.services.points_service import PointsService
from gmtea.services.query_service import invalidate_leaderboards
from gmtea.services.user_service import ensure_user
from gmtea.utils.formatters import utc_now
from gmtea.utils.validation import validate_address

logger = structlog.get_logger(__name__)

INDEXING_TASK = "indexing_cycle"

# Sources whose new records can change points or ranks
POINTS_SOURCES = frozenset({"checkin", "badge"})

# Clearing a source's store also wipes state another source derives from it
REINDEX_DEPENDENTS = {"referral": ("reward",)}


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    sources: Dict[str, IndexingStats] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    reconciled: int = 0
    ranks_changed: int = 0
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "sources": {name: stats.to_dict() for name, stats in self.sources.items()},
            "errors": dict(self.errors),
            "reconciled": self.reconciled,
            "ranks_changed": self.ranks_changed,
        }


class IndexingScheduler:
    """Runs sources sequentially on an interval and exposes the admin operations."""
    
    def __init__(
        self,
        engine: BackfillEngine,
        checkpoints: CheckpointManager,
        sources: List[EventSource],
        session_scope: SessionScope,
        interval_minutes: float = 5,
        rank_batch_size: int = 500,
        cache: Optional[CacheBackend] = None,
        loop_interval: float = 1.0,
        events: Optional[EventBus] = None,
    ):
        self.engine = engine
        self.checkpoints = checkpoints
        self.sources = list(sources)
        self.session_scope = session_scope
        self.rank_batch_size = rank_batch_size
        self.cache = cache
        self.events = events or EventBus()
        self.status = IndexerStatus.STOPPED
        self.last_cycle: Optional[CycleReport] = None
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="indexing_scheduler")
        
        self.task_scheduler = TaskScheduler(loop_interval=loop_interval)
        self.task_scheduler.register_task(
            INDEXING_TASK,
            self.run_cycle,
            interval_seconds=interval_minutes * 60,
            run_immediately=True,
        )
    
    # Periodic driver
    
    async def start(self):
        """Run cycles on the interval until stop() is called."""
        if self.task_scheduler.running:
            raise SchedulerError("Indexing scheduler is already running")
        self.status = IndexerStatus.RUNNING
        self.logger.info("🚀 Indexing scheduler started", sources=[s.name for s in self.sources])
        try:
            await self.task_scheduler.start()
        finally:
            self.status = IndexerStatus.STOPPED
    
    async def stop(self):
        """Prevent the next tick. A cycle already running finishes."""
        await self.task_scheduler.stop()
        self.logger.info("Indexing scheduler stopping")
    
    def set_interval(self, minutes: float):
        if minutes <= 0:
            raise ValidationError("Interval must be positive", {"minutes": minutes})
        self.task_scheduler.set_interval(INDEXING_TASK, minutes * 60)
    
    @property
    def interval_minutes(self) -> float:
        return self.task_scheduler.tasks[INDEXING_TASK].interval_seconds / 60
    
    async def run_cycle(self) -> CycleReport:
        """One pass over every source. Never raises."""
        async with self._lock:
            previous_status = self.status
            self.status = IndexerStatus.INDEXING
            try:
                report = await self._run_cycle_locked()
            finally:
                self.status = previous_status
            self.last_cycle = report
            return report
    
    async def _run_cycle_locked(self) -> CycleReport:
        report = CycleReport(started_at=utc_now())
        
        for source in self.sources:
            stats = await self._run_source(source, report)
            if stats is not None:
                report.sources[source.name] = stats
        
        touched = set()
        points_changed = False
        for name, stats in report.sources.items():
            if name not in POINTS_SOURCES:
                continue
            if stats.created or stats.patched:
                points_changed = True
            if name == "checkin":
                touched.update(stats.touched_addresses)
        
        try:
            if touched:
                report.reconciled = await self._reconcile_addresses(sorted(touched))
            if points_changed:
                report.ranks_changed = await self._recalculate_ranks()
        except Exception as e:
            report.errors["reconciliation"] = str(e)
            self.logger.error("Post-cycle reconciliation failed", error=str(e), exc_info=True)
        
        report.finished_at = utc_now()
        self.logger.info(
            "Indexing cycle finished",
            duration=(report.finished_at - report.started_at).total_seconds(),
            reconciled=report.reconciled,
            ranks_changed=report.ranks_changed,
            errors=len(report.errors)
        )
        return report
    
    async def _run_source(self, source: EventSource, report: CycleReport) -> Optional[IndexingStats]:
        try:
            stats = await self.engine.run(source)
        except Exception as e:
            report.errors[source.name] = str(e)
            self.logger.error("Source indexing failed", source=source.name, error=str(e), exc_info=True)
            await self._clear_sync_flag(source)
            return None
        if stats.error:
            report.errors[source.name] = stats.error
        return stats
    
    async def _clear_sync_flag(self, source: EventSource) -> None:
        try:
            await self.checkpoints.end_sync(source.source_id)
        except Exception as e:
            self.logger.error("Could not clear sync flag", source=source.name, error=str(e))
    
    # Points and ranks
    
    async def _reconcile_addresses(self, addresses: Iterable[str]) -> int:
        reconciled = 0
        for address in addresses:
            try:
                async with self.session_scope() as db:
                    await PointsService(db).recalculate_single_user_points(address)
                reconciled += 1
            except Exception as e:
                self.logger.error("Reconciliation failed", address=address, error=str(e))
        return reconciled
    
    async def _recalculate_ranks(self) -> int:
        async with self.session_scope() as db:
            changed = await PointsService(db).recalculate_all_ranks(self.rank_batch_size)
        await invalidate_leaderboards(self.cache)
        return changed
    
    async def recalculate_points(self, address: Optional[str] = None) -> Dict[str, Any]:
        """Reconcile one address, or every user when no address is given, then rerank."""
        async with self._lock:
            if address is not None:
                address = self._require_address(address)
                async with self.session_scope() as db:
                    breakdown = await PointsService(db).recalculate_single_user_points(address)
                ranks_changed = await self._recalculate_ranks()
                return {"updated": 1, "ranks_changed": ranks_changed, "breakdown": breakdown.to_dict()}
            
            async with self.session_scope() as db:
                addresses = await PointsService(db).list_addresses()
            updated = await self._reconcile_addresses(addresses)
            ranks_changed = await self._recalculate_ranks()
            self.logger.info("Recalculated points for all users", users=len(addresses), updated=updated)
            return {
                "updated": updated,
                "failed": len(addresses) - updated,
                "ranks_changed": ranks_changed,
            }
    
    async def recalculate_all_ranks(self) -> Dict[str, Any]:
        async with self._lock:
            return {"ranks_changed": await self._recalculate_ranks()}
    
    # Manual reindex and fixes
    
    def _select_sources(self, source_name: Optional[str]) -> List[EventSource]:
        if source_name is None:
            return list(self.sources)
        by_name = {source.name: source for source in self.sources}
        if source_name not in by_name:
            raise UnknownSourceError(source_name, sorted(by_name))
        names = [source_name] + [n for n in REINDEX_DEPENDENTS.get(source_name, ()) if n in by_name]
        return [source for source in self.sources if source.name in names]
    
    async def reindex_all(self, source_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Hard reset and replay.
        
        Each selected source has its checkpoint moved back to before deployment
        and its collections cleared, then is backfilled again. Points and ranks
        are rebuilt afterwards.
        """
        selected = self._select_sources(source_name)
        
        async with self._lock:
            self.status = IndexerStatus.INDEXING
            results: Dict[str, Any] = {}
            try:
                for source in selected:
                    self.logger.warning("♻️ Reindexing source", source=source.name)
                    try:
                        await self.checkpoints.get_checkpoint(source.source_id, source.contract_address)
                        await self.checkpoints.reset(source.source_id)
                        async with self.session_scope() as db:
                            await source.handler.reset_store(db)
                        results[source.name] = (await self.engine.run(source)).to_dict()
                    finally:
                        await self._clear_sync_flag(source)
                
                async with self.session_scope() as db:
                    addresses = await PointsService(db).list_addresses()
                reconciled = await self._reconcile_addresses(addresses)
                ranks_changed = await self._recalculate_ranks()
            finally:
                self.status = IndexerStatus.RUNNING if self.task_scheduler.running else IndexerStatus.STOPPED
        
        return {"sources": results, "reconciled": reconciled, "ranks_changed": ranks_changed}
    
    async def fix_referrer_casing(self) -> Dict[str, int]:
        """Lower-case referrer addresses stored with mixed case."""
        async with self._lock:
            fixed = 0
            async with self.session_scope() as db:
                total = (await db.execute(
                    select(func.count()).select_from(Badge).where(Badge.referrer.is_not(None))
                )).scalar_one()
                
                badges = (await db.execute(
                    select(Badge).where(Badge.referrer.is_not(None), Badge.referrer != func.lower(Badge.referrer))
                )).scalars().all()
                for badge in badges:
                    badge.referrer = badge.referrer.lower()
                fixed += len(badges)
                
                referrals = (await db.execute(
                    select(Referral).where(
                        (Referral.referrer != func.lower(Referral.referrer))
                        | (Referral.referee != func.lower(Referral.referee))
                    )
                )).scalars().all()
                for referral in referrals:
                    referral.referrer = referral.referrer.lower()
                    referral.referee = referral.referee.lower()
                fixed += len(referrals)
                
                users = (await db.execute(
                    select(User).where(User.referrer.is_not(None), User.referrer != func.lower(User.referrer))
                )).scalars().all()
                for user in users:
                    user.referrer = user.referrer.lower()
                fixed += len(users)
            
            self.logger.info("Referrer casing fixed", fixed=fixed, total=total)
            return {"fixed": fixed, "total": total}
    
    async def sync_address_rewards(self, address: str) -> Dict[str, Any]:
        """Rebuild one address's reward balances and badge links, then reconcile its points."""
        address = self._require_address(address)
        
        async with self._lock:
            async with self.session_scope() as db:
                await ensure_user(db, address)
                badge_ids = await related_badge_ids(db, address)
                
                rewards = (await db.execute(
                    select(Reward).where(Reward.referrer == address)
                )).scalars().all()
                for reward in rewards:
                    reward.related_badges = list(badge_ids)
                
                added = sum(r.amount for r in rewards if r.kind == RewardKind.ADDED)
                claimed = sum(r.amount for r in rewards if r.kind == RewardKind.CLAIMED)
                claim_times = [r.event_at for r in rewards if r.kind == RewardKind.CLAIMED]
                
                user = await db.get(User, address, populate_existing=True)
                user.total_referral_rewards = added
                user.claimed_rewards = claimed
                user.pending_rewards = max(added - claimed, 0.0)
                user.last_reward_claim = max(claim_times, default=None)
                
                breakdown = await PointsService(db).recalculate_single_user_points(address)
            
            await invalidate_leaderboards(self.cache)
            self.logger.info("Rewards synced", address=address, rewards=len(rewards))
            return {
                "address": address,
                "rewards": len(rewards),
                "related_badges": len(badge_ids),
                "total_referral_rewards": added,
                "claimed_rewards": claimed,
                "pending_rewards": max(added - claimed, 0.0),
                "points": breakdown.total_points,
            }
    
    # Status
    
    async def get_status(self) -> Dict[str, Any]:
        async with self.session_scope() as db:
            checkpoints = (await db.execute(
                select(SyncCheckpoint).order_by(SyncCheckpoint.source_id)
            )).scalars().all()
            checkpoint_view = [
                {
                    "source_id": checkpoint.source_id,
                    "last_processed_block": checkpoint.last_processed_block,
                    "is_syncing": checkpoint.is_syncing,
                    "last_sync_time": checkpoint.last_sync_time.isoformat() if checkpoint.last_sync_time else None,
                }
                for checkpoint in checkpoints
            ]
        
        return {
            "status": self.status.value,
            "interval_minutes": self.interval_minutes,
            "sources": [source.source_id for source in self.sources],
            "checkpoints": checkpoint_view,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "scheduler": self.task_scheduler.health_check(),
        }
    
    @staticmethod
    def _require_address(address: str) -> str:
        return validate_address(address)
