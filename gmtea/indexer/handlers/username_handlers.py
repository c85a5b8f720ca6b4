"""
Event handlers for username registrations and changes.
"""

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.indexer.core.types import DecodedEvent, HandlerResult, ProcessOutcome
from gmtea.indexer.handlers.base import BaseEventHandler
from gmtea.models.user import User
from gmtea.services.user_service import ensure_user
from gmtea.utils.formatters import normalize_address


class UsernameHandlers(BaseEventHandler):
    """
    Handles UsernameRegistered and UsernameChanged events.
    
    A username is only written when the event sits later on chain than the one
    that set the current value, so replays never roll a rename back.
    """
    
    name = "username"
    
    def __init__(self, session_scope, notifier=None):
        super().__init__(session_scope, notifier)
        self._event_handlers = {
            "UsernameRegistered": self.handle_username_registered,
            "UsernameChanged": self.handle_username_changed,
        }
    
    async def handle_username_registered(self, db: AsyncSession, event: DecodedEvent) -> HandlerResult:
        """Handle UsernameRegistered event."""
        return await self._apply_username(db, event, event.args.get("username"))
    
    async def handle_username_changed(self, db: AsyncSession, event: DecodedEvent) -> HandlerResult:
        """Handle UsernameChanged event."""
        return await self._apply_username(db, event, event.args.get("newUsername"))
    
    async def _apply_username(self, db: AsyncSession, event: DecodedEvent, raw_username) -> HandlerResult:
        address = normalize_address(event.args["user"])
        username = (raw_username or "").strip().lower()
        if not username:
            self.logger.warning("Empty username in event", address=address, tx=event.transaction_hash)
            return HandlerResult(ProcessOutcome.IGNORED)
        
        await ensure_user(db, address)
        result = await db.execute(
            update(User)
            .where(
                User.address == address,
                or_(
                    User.username_block.is_(None),
                    User.username_block < event.block_number,
                    and_(
                        User.username_block == event.block_number,
                        User.username_log_index < event.log_index,
                    ),
                ),
            )
            .values(
                username=username,
                username_block=event.block_number,
                username_log_index=event.log_index,
            )
            .execution_options(synchronize_session=False)
        )
        
        if not result.rowcount:
            self.logger.debug("Username event not newer than stored one", address=address, username=username)
            return HandlerResult(ProcessOutcome.DUPLICATE)
        
        self.logger.info("Username set", address=address, username=username, event_name=event.name)
        return HandlerResult(
            ProcessOutcome.CREATED,
            (address,),
            notification=("username", [address], {"username": username, "event": event.name}),
        )
    
    async def reset_store(self, db: AsyncSession) -> None:
        await db.execute(
            update(User)
            .values(username=None, username_block=None, username_log_index=None)
            .execution_options(synchronize_session=False)
        )
