"""
FastAPI application factory for Arena Server.

This module creates the FastAPI app with:
- BackupService lifecycle management (storage opened on startup,
  closed on shutdown)
- CORS configuration for the admin frontend
- Backup and restore routes
- Error translation from backup errors to status codes
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import Settings
from ..errors import (
    ArchiveInvalidError,
    ArenaBackupError,
    ConcurrencyError,
    RestoreTimeoutError,
    SnapshotFormatError,
    StorageBusyError,
    StorageUnavailableError,
)
from ..service import BackupService
from .routes import router

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[ArenaBackupError], int]] = [
    (ConcurrencyError, 409),
    (StorageBusyError, 409),
    (ArchiveInvalidError, 400),
    (SnapshotFormatError, 400),
    (StorageUnavailableError, 503),
    (RestoreTimeoutError, 504),
]


def status_for(error: ArenaBackupError) -> int:
    """HTTP status code for a backup error."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


async def backup_error_handler(request: Request, exc: ArenaBackupError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"Backup operation failed: {exc.message}", extra={"code": exc.code})
    headers = {"Retry-After": "5"} if exc.retryable or status == 409 else None
    return JSONResponse(
        {"error": exc.message, "error_code": exc.code, "retryable": exc.retryable},
        status_code=status,
        headers=headers,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage BackupService lifecycle."""
        service = BackupService(settings)
        await service.start()
        app.state.backup_service = service
        app.state.settings = settings

        yield

        await service.stop()

    app = FastAPI(
        title="Arena Server",
        description="Snapshot and restore administration for the competition platform.",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ArenaBackupError, backup_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health(request: Request):
        result = request.app.state.backup_service.health()
        return JSONResponse(result, status_code=200 if result["healthy"] else 503)

    return app
