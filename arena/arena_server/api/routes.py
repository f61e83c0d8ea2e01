"""
API routes for Arena Server backup administration.

Every admin route requires the X-Backup-Key header to match the configured
backup key. Errors raised by the backup subsystem are translated into a
single human-readable message by the exception handler in app.py.
"""

import asyncio
import logging
import shutil
import uuid
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from ..errors import BackupIOError
from ..service import BackupService
from ..storage import UnknownTableError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Arena Backup"])


# --- Request/Response Models ---


class BackupCreatedResponse(BaseModel):
    """Snapshot export result."""

    success: bool = True
    path: str


class SnapshotFileResponse(BaseModel):
    """Snapshot file listing entry."""

    name: str
    size: int
    created: str


class RestoreJsonRequest(BaseModel):
    """JSON snapshot restore request."""

    backup_data: dict[str, Any] = Field(..., alias="backupData", description="Snapshot document")


class ImportResponse(BaseModel):
    """JSON snapshot restore result."""

    success: bool = True
    rows: dict[str, int]


class SystemRestoreResponse(BaseModel):
    """Archive restore result."""

    success: bool = True
    failsafe_path: str | None
    uploads_replaced: bool
    duration_ms: int


# --- Dependencies ---


def get_service(request: Request) -> BackupService:
    """Get backup service from app state."""
    return request.app.state.backup_service


def require_backup_key(
    request: Request,
    x_backup_key: str | None = Header(None, alias="X-Backup-Key"),
) -> None:
    """Reject requests without the configured backup key."""
    expected = request.app.state.settings.backup_key
    if not expected:
        raise HTTPException(status_code=503, detail="Backup key is not configured")
    if x_backup_key != expected:
        raise HTTPException(status_code=401, detail="Invalid backup key")


# --- Snapshot routes ---


@router.post(
    "/backup",
    response_model=BackupCreatedResponse,
    dependencies=[Depends(require_backup_key)],
)
async def create_backup(service: BackupService = Depends(get_service)):
    path = await service.export()
    return BackupCreatedResponse(path=str(path))


@router.get(
    "/backup/list",
    response_model=list[SnapshotFileResponse],
    dependencies=[Depends(require_backup_key)],
)
async def list_backups(service: BackupService = Depends(get_service)):
    return [s.to_dict() for s in service.list_snapshots()]


@router.get("/backup/download/{filename}", dependencies=[Depends(require_backup_key)])
async def download_backup(filename: str, service: BackupService = Depends(get_service)):
    path = service.codec.snapshot_path(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="Backup not found")
    return FileResponse(path, media_type="application/json", filename=path.name)


@router.post(
    "/backup/restore",
    response_model=ImportResponse,
    dependencies=[Depends(require_backup_key)],
)
async def restore_backup(body: RestoreJsonRequest, service: BackupService = Depends(get_service)):
    rows = await service.import_snapshot(body.backup_data)
    return ImportResponse(rows=rows)


# --- Whole-system routes ---


@router.get("/admin/system/backup", dependencies=[Depends(require_backup_key)])
async def download_system_backup(service: BackupService = Depends(get_service)):
    path = await service.build_archive()
    return FileResponse(
        path,
        media_type="application/zip",
        filename=path.name,
        background=BackgroundTask(path.unlink, missing_ok=True),
    )


def _save_upload(backup: UploadFile, upload_path: Path) -> None:
    with open(upload_path, "wb") as f:
        shutil.copyfileobj(backup.file, f)


@router.post(
    "/admin/system/restore",
    response_model=SystemRestoreResponse,
    dependencies=[Depends(require_backup_key)],
)
async def restore_system(
    backup: UploadFile = File(..., description="Archive bundle (zip)"),
    service: BackupService = Depends(get_service),
):
    upload_path = Path(service.settings.data_root) / f".upload-{uuid.uuid4().hex}.zip"
    try:
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, _save_upload, backup, upload_path
            )
        except OSError as e:
            raise BackupIOError("upload save", str(upload_path), e) from e

        result = await service.restore(upload_path)
    finally:
        upload_path.unlink(missing_ok=True)

    return SystemRestoreResponse(
        failsafe_path=str(result.failsafe_path) if result.failsafe_path else None,
        uploads_replaced=result.uploads_replaced,
        duration_ms=result.duration_ms,
    )


# --- Entity listings ---


@router.get("/entities/{table}", dependencies=[Depends(require_backup_key)])
async def list_entities(table: str, service: BackupService = Depends(get_service)):
    try:
        return await service.list_rows(table)
    except UnknownTableError:
        raise HTTPException(status_code=404, detail=f"Unknown table: {table}")
