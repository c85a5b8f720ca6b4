"""
Database engine and session scopes.

SQLAlchemy 2.0 asyncio. Entry points call ``init_database`` once and hand a
session scope (``get_session_scope``) to the scheduler. Everything below the
entry points only ever sees a scope.
"""

from typing import AsyncContextManager, AsyncGenerator, Callable, Optional
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import DatabaseConfig, settings
from .exceptions import DatabaseError
from .logging import get_logger

logger = get_logger(__name__)

# A zero-argument factory of transactional sessions
SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine_from_url(url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(
        DatabaseConfig.get_database_url(url, async_driver=True),
        echo=echo,
        **DatabaseConfig.get_engine_config(url),
    )


def build_session_scope(session_maker: async_sessionmaker[AsyncSession]) -> SessionScope:
    """
    Wrap a session maker in a commit-or-rollback scope.

    The exception that caused a rollback is re-raised unchanged.
    """
    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    
    return scope


async def init_database(url: Optional[str] = None) -> None:
    global async_engine, async_session_maker
    
    target = url or settings.database_url
    async_engine = create_engine_from_url(target, echo=settings.debug)
    async_session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("Database engine created", driver=async_engine.url.drivername)


async def close_database() -> None:
    global async_engine, async_session_maker
    
    if async_engine is not None:
        await async_engine.dispose()
        logger.info("Database engine disposed")
    async_engine = None
    async_session_maker = None


def get_session_scope() -> SessionScope:
    """Session scope over the engine opened by ``init_database``."""
    if async_session_maker is None:
        raise DatabaseError("Database not initialized, call init_database() first")
    return build_session_scope(async_session_maker)


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_scope()() as session:
        yield session


def _require_engine() -> AsyncEngine:
    if async_engine is None:
        raise DatabaseError("Database not initialized, call init_database() first")
    return async_engine


class DatabaseManager:
    """Schema and connectivity helpers for the CLI and the health route."""
    
    @staticmethod
    async def create_tables() -> None:
        from gmtea.models import Base
        
        async with _require_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created", tables=sorted(Base.metadata.tables))
    
    @staticmethod
    async def drop_tables() -> None:
        from gmtea.models import Base
        
        logger.warning("Dropping all database tables")
        async with _require_engine().begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    
    @staticmethod
    async def health_check() -> bool:
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
