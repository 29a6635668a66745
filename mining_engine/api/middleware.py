"""
Custom middleware and exception handlers for the FastAPI application.
"""

import time
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

import structlog

from mining_engine.api.schemas.common import create_error_response
from mining_engine.core.config import settings
from mining_engine.core.exceptions import (
    ConcurrencyConflictError,
    MiningEngineException,
    NotFoundError,
    SchedulerError,
    TransientStoreError,
    ValidationError,
)


logger = structlog.get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        logger.debug(
            "Request started",
            method=request.method,
            url=str(request.url),
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.perf_counter() - start_time
            logger.error(
                "Request failed",
                method=request.method,
                url=str(request.url),
                error=str(e),
                process_time=process_time,
            )
            error = create_error_response(
                "An internal server error occurred", error_code="INTERNAL_SERVER_ERROR"
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=error.model_dump(mode="json"),
            )

        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            process_time=process_time,
        )
        return response


def status_code_for(exc: MiningEngineException) -> int:
    """HTTP status for an engine error."""
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (ConcurrencyConflictError, SchedulerError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, TransientStoreError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def engine_exception_handler(request: Request, exc: MiningEngineException) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "Request rejected",
        method=request.method,
        url=str(request.url),
        error_code=exc.code,
        error=exc.message,
        status_code=status_code,
    )
    error = create_error_response(exc.message, error_code=exc.code, details=exc.details)
    return JSONResponse(status_code=status_code, content=error.model_dump(mode="json"))


def add_middleware(app: FastAPI) -> None:
    """Add middleware and exception handlers to the FastAPI app."""
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(LoggingMiddleware)
    app.add_exception_handler(MiningEngineException, engine_exception_handler)

    logger.info("Middleware configured successfully")
