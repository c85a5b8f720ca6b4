"""
Shared plumbing for event processors.
"""

from typing import Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.core.database import SessionScope
from gmtea.indexer.core.types import DecodedEvent, HandlerResult, ProcessOutcome
from gmtea.services.notification_service import NotificationSink, NullNotificationSink

logger = structlog.get_logger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

EventCallback = Callable[[AsyncSession, DecodedEvent], Awaitable[HandlerResult]]


class BaseEventHandler:
    """
    Runs one decoded event through the callback registered for its name.
    
    Each event gets its own session; the callback does every store write for
    the event inside it and notifications go out only after the commit.
    """
    
    name = "base"
    
    def __init__(self, session_scope: SessionScope, notifier: Optional[NotificationSink] = None):
        self.session_scope = session_scope
        self.notifier = notifier if notifier is not None else NullNotificationSink()
        self.logger = logger.bind(service=f"{self.name}_handlers")
        self._event_handlers: Dict[str, EventCallback] = {}
    
    async def handle(self, event: DecodedEvent) -> HandlerResult:
        callback = self._event_handlers.get(event.name)
        if callback is None:
            self.logger.warning("No handler for event", event_name=event.name, tx=event.transaction_hash)
            return HandlerResult(ProcessOutcome.IGNORED)
        
        async with self.session_scope() as db:
            result = await callback(db, event)
        
        if result.notification is not None:
            await self.notifier.send(*result.notification)
        return result
    
    async def reset_store(self, db: AsyncSession) -> None:
        raise NotImplementedError
    
    async def _flush_new(self, db: AsyncSession, record) -> bool:
        """
        Add a record and flush it.
        
        A unique-key violation means a concurrent processor stored the same
        event first; the transaction is rolled back and False returned.
        """
        db.add(record)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            self.logger.debug("Concurrent duplicate rejected by unique key", record=repr(record))
            return False
        return True
