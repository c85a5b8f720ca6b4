"""
Middleware and exception handlers for the FastAPI application.
"""

import time
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

import structlog

from gmtea.core.config import settings
from gmtea.core.exceptions import GMTeaException, NotFoundError, ValidationError
from gmtea.api.schemas.common import ErrorResponse

logger = structlog.get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging with timing."""
    
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=round(process_time, 4),
        )
        return response


def _error_body(error_code: str, message: str, details=None) -> dict:
    return ErrorResponse(error_code=error_code, message=message, details=details or {}).model_dump(mode="json")


async def gmtea_exception_handler(request: Request, exc: GMTeaException) -> JSONResponse:
    if isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    else:
        logger.error("Request failed", path=request.url.path, error_code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(exc.code, "An internal server error occurred"),
        )
    
    return JSONResponse(status_code=status_code, content=_error_body(exc.code, exc.message, exc.details))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("INTERNAL_SERVER_ERROR", "An internal server error occurred"),
    )


def add_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    
    app.add_exception_handler(GMTeaException, gmtea_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
