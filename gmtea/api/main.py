"""
FastAPI application exposing points, leaderboards and admin operations.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from gmtea.api.middleware import add_middleware
from gmtea.api.routes import admin, leaderboards, users
from gmtea.api.schemas.common import HealthCheckResponse, SuccessResponse
from gmtea.core.config import settings
from gmtea.core.database import DatabaseManager, close_database, get_session_scope, init_database
from gmtea.core.logging import setup_logging
from gmtea.scheduler.main import build_indexing_scheduler

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and, when enabled, run the indexer in the background."""
    logger.info("Starting GM Tea API server")
    await init_database(settings.database_url)
    
    scheduler = build_indexing_scheduler(settings, get_session_scope())
    app.state.scheduler = scheduler
    app.state.cache = scheduler.cache
    
    background = None
    if settings.scheduler_enabled and settings.is_production:
        background = asyncio.create_task(scheduler.start())
        logger.info("Background indexing started")
    
    yield
    
    logger.info("Shutting down GM Tea API server")
    if background is not None:
        await scheduler.stop()
        background.cancel()
        try:
            await background
        except asyncio.CancelledError:
            pass
    await scheduler.engine.ledger.close()
    await close_database()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    setup_logging()
    
    app = FastAPI(
        title="GM Tea Indexer API",
        description="Points, badges, check-ins and leaderboards indexed from the GM Tea contracts.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    add_middleware(app)
    
    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check"
    )
    async def health_check():
        database_ok = await DatabaseManager.health_check()
        services = {"database": "healthy" if database_ok else "unhealthy", "api": "healthy"}
        if not database_ok:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "services": services},
            )
        return HealthCheckResponse(services=services)
    
    @app.get("/", response_model=SuccessResponse, tags=["System"], summary="API Information")
    async def root():
        return SuccessResponse(
            message=f"GM Tea Indexer API v{settings.app_version}",
            data={
                "version": settings.app_version,
                "environment": settings.environment,
                "docs_url": "/docs",
            }
        )
    
    app.include_router(users.router, prefix=f"{settings.api_v1_prefix}/users")
    app.include_router(leaderboards.router, prefix=f"{settings.api_v1_prefix}/leaderboards")
    app.include_router(admin.router, prefix=f"{settings.api_v1_prefix}/admin")
    
    logger.info("FastAPI application created")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    
    uvicorn.run(
        "gmtea.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
