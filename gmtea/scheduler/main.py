"""
Main entry point for the indexing scheduler.
"""

import asyncio
import signal
from typing import Optional

import structlog

from gmtea.core.config import IndexerConfig, Settings, settings
from gmtea.core.database import SessionScope, close_database, get_session_scope, init_database
from gmtea.core.logging import setup_logging
from gmtea.indexer.backfill_engine import BackfillEngine
from gmtea.indexer.checkpoint_manager import CheckpointManager
from gmtea.indexer.handlers import (
    BadgeHandlers,
    CheckinHandlers,
    ReferralHandlers,
    RewardHandlers,
    UsernameHandlers,
)
from gmtea.indexer.sources import SourceAddresses, build_sources
from gmtea.scheduler.indexing_scheduler import IndexingScheduler
from gmtea.services.cache import CacheBackend, create_cache
from gmtea.services.ledger_client import LedgerClient, Web3LedgerClient
from gmtea.services.notification_service import EventBus, NotificationSink, create_notification_sink

logger = structlog.get_logger(__name__)


def build_indexing_scheduler(
    config: Settings,
    session_scope: SessionScope,
    ledger: Optional[LedgerClient] = None,
    notifier: Optional[NotificationSink] = None,
    cache: Optional[CacheBackend] = None,
) -> IndexingScheduler:
    """
    Wire ledger, checkpoints, processors and sources from settings.
    
    Processors publish to an EventBus exposed as ``scheduler.events``. The
    given notifier, or the configured webhook, is its first subscriber.
    """
    indexer_config = IndexerConfig.from_settings(config)
    if ledger is None:
        ledger = Web3LedgerClient(config.rpc_url, config.rpc_timeout_seconds)
    if notifier is None:
        notifier = create_notification_sink(
            config.webhook_url, config.webhook_secret, config.webhook_timeout_seconds
        )
    events = EventBus()
    events.subscribe(notifier.send)
    if cache is None:
        cache = create_cache(config.cache_backend, config.redis_url, config.redis_prefix)
    
    checkpoints = CheckpointManager(session_scope, indexer_config.deploy_block)
    handlers = {
        "checkin": CheckinHandlers(session_scope, events),
        "badge": BadgeHandlers(session_scope, events),
        "username": UsernameHandlers(session_scope, events),
        "referral": ReferralHandlers(session_scope, events, referral_points=config.referral_ledger_points),
        "reward": RewardHandlers(session_scope, events),
    }
    sources = build_sources(SourceAddresses.from_settings(config), handlers)
    engine = BackfillEngine(ledger, checkpoints, indexer_config, cache)
    
    return IndexingScheduler(
        engine=engine,
        checkpoints=checkpoints,
        sources=sources,
        session_scope=session_scope,
        interval_minutes=config.index_interval_minutes,
        rank_batch_size=config.rank_update_batch_size,
        cache=cache,
        events=events,
    )


class SchedulerMain:
    """Owns the database connection and the scheduler for a standalone process."""
    
    def __init__(self, config: Settings = settings):
        self.config = config
        self.scheduler: Optional[IndexingScheduler] = None
    
    async def initialize(self):
        logger.info("🚀 Initializing indexing scheduler")
        await init_database(self.config.database_url)
        self.scheduler = build_indexing_scheduler(self.config, get_session_scope())
        logger.info("✅ Indexing scheduler initialized", sources=len(self.scheduler.sources))
    
    async def start(self):
        if not self.config.scheduler_enabled:
            logger.warning("Scheduler disabled by configuration")
            return
        await self.scheduler.start()
    
    async def stop(self):
        if self.scheduler:
            await self.scheduler.stop()
        await close_database()
        logger.info("Indexing scheduler shut down")


async def main():
    """Run the scheduler until SIGINT/SIGTERM."""
    setup_logging()
    service = SchedulerMain()
    loop = asyncio.get_running_loop()
    
    def signal_handler():
        logger.info("Received shutdown signal")
        if service.scheduler:
            asyncio.create_task(service.scheduler.stop())
    
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler)
    
    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.error("Scheduler service failed", error=str(e))
        raise
    finally:
        await service.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
