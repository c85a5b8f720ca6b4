"""
API dependencies for FastAPI endpoints.
"""

import hmac
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, Header, HTTPException, Path, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.core.config import settings
from gmtea.core.database import get_async_session
from gmtea.scheduler.indexing_scheduler import IndexingScheduler
from gmtea.services.query_service import QueryService
from gmtea.utils.validation import is_valid_address

logger = structlog.get_logger(__name__)


async def get_database() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_async_session() as session:
        yield session


async def validate_address_param(
    address: str = Path(..., description="Wallet address")
) -> str:
    """Validate and lower-case an address path parameter."""
    if not is_valid_address(address):
        logger.warning("Invalid address provided", address=address)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "INVALID_ADDRESS",
                "message": "Invalid wallet address format"
            }
        )
    return address.lower()


async def get_query_service(
    request: Request,
    db: AsyncSession = Depends(get_database),
) -> QueryService:
    return QueryService(
        db,
        cache=getattr(request.app.state, "cache", None),
        leaderboard_ttl_seconds=settings.leaderboard_ttl_seconds,
    )


async def get_scheduler(request: Request) -> IndexingScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "SCHEDULER_UNAVAILABLE", "message": "Indexer is not running"}
        )
    return scheduler


async def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(default=None),
) -> None:
    expected = getattr(request.app.state, "admin_api_key", None) or settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("Rejected admin request", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "UNAUTHORIZED", "message": "Admin key required"}
        )
