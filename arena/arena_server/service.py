"""
Backup service: wires the storage, snapshot and archive components.

One BackupService exists per process. It owns the single StorageManager and
the OperationGuard and hands both to every component that needs them, so
export, import, restore and archive build all serialize on the same guard
and see the same connection.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .archive import ArchiveBuilder, ArchiveRestorer, RestoreResult
from .config import Settings
from .guard import OperationGuard
from .snapshot import RetentionPolicy, SnapshotCodec, SnapshotFile
from .storage import EntityStore, StorageManager

logger = logging.getLogger(__name__)


class BackupService:
    """Entry point used by the HTTP layer.

    Attributes:
        settings: Server settings
        storage: Shared storage manager
        guard: Maintenance guard
        entities: Entity listings and writes
        codec: JSON snapshot export/import
        restorer: Archive restore state machine
        builder: Archive bundle creation

    Example:
        >>> service = BackupService(Settings(data_dir="/srv/arena"))
        >>> await service.start()
        >>> path = await service.export()
        >>> await service.stop()
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.guard = OperationGuard()
        self.storage = StorageManager(
            self.settings.database_path,
            wal_mode=self.settings.wal_mode,
            busy_timeout_ms=self.settings.busy_timeout_ms,
        )
        self.entities = EntityStore(self.storage, self.guard)
        self.codec = SnapshotCodec(
            self.storage,
            self.guard,
            self.settings.backups_dir,
            retention=RetentionPolicy(self.settings.backups_dir, keep=self.settings.retention_count),
        )
        self.restorer = ArchiveRestorer(
            self.storage,
            self.guard,
            data_root=self.settings.data_root,
            uploads_dir=self.settings.uploads_dir,
            timeout_seconds=self.settings.restore_timeout_seconds,
            reopen_attempts=self.settings.reopen_attempts,
            reopen_delay_seconds=self.settings.reopen_delay_seconds,
        )
        self.builder = ArchiveBuilder(self.storage, self.guard, self.settings.uploads_dir)

    async def start(self) -> None:
        """Create the data layout and open the database."""
        for directory in (self.settings.data_root, self.settings.uploads_dir, self.settings.backups_dir):
            Path(directory).mkdir(parents=True, exist_ok=True)
        await self.storage.open()

    async def stop(self) -> None:
        await self.storage.close()

    async def export(self) -> Path:
        return await self.codec.export()

    async def import_snapshot(self, document: dict[str, Any]) -> dict[str, int]:
        return await self.codec.import_snapshot(document)

    async def restore(self, archive_path: str | Path) -> RestoreResult:
        return await self.restorer.restore(archive_path)

    async def build_archive(self) -> Path:
        return await self.builder.build(self.settings.backups_dir)

    async def list_rows(self, table: str) -> list[dict[str, Any]]:
        """Entity listing, read off the event loop."""
        return await asyncio.get_running_loop().run_in_executor(
            None, self.entities.list_rows, table
        )

    def list_snapshots(self) -> list[SnapshotFile]:
        return self.codec.list_snapshots()

    def health(self) -> dict[str, Any]:
        """Storage state for the health endpoint."""
        return {
            "healthy": self.storage.is_open,
            "storage_open": self.storage.is_open,
            "maintenance": self.guard.active,
        }
