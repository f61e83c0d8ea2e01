"""
Archive bundle creation.

Produces the zip bundles that ArchiveRestorer consumes:

    arena-backup-<epoch_ms>.zip
        database.sqlite   consistent copy via the SQLite backup API
        uploads/...       live uploads tree
        manifest.json     created_at, database_size, database_sha256,
                          schema_version

Invariants:
    - The database copy is taken from the live handle with the backup API,
      so it is consistent even while WAL mode is active
    - The bundle appears under its final name only once complete
    - Build holds the OperationGuard; the copy and zip write run in the
      default executor
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import tempfile
import time
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import BackupIOError
from ..guard import OperationGuard
from ..storage.lifecycle import StorageManager
from ..storage.migrations import current_version
from .restorer import DATABASE_MEMBER, MANIFEST_MEMBER, UPLOADS_MEMBER, compute_checksum

logger = logging.getLogger(__name__)


class ArchiveBuilder:
    """Bundles the live database and uploads tree into a zip file.

    Example:
        >>> builder = ArchiveBuilder(storage, guard, "/srv/arena/uploads")
        >>> path = await builder.build("/srv/arena/backups")
    """

    def __init__(
        self,
        storage: StorageManager,
        guard: OperationGuard,
        uploads_dir: str | Path,
    ) -> None:
        self.storage = storage
        self.guard = guard
        self.uploads_dir = Path(uploads_dir)

    def _backup_database(self, dest_path: Path) -> int:
        """Copy the live database with the SQLite backup API.

        Returns:
            Schema version of the copied database
        """
        with self.storage.locked() as source_conn:
            dest_conn = sqlite3.connect(str(dest_path))
            try:
                source_conn.backup(dest_conn)
                return current_version(dest_conn)
            finally:
                dest_conn.close()

    def _write_uploads(self, zf: zipfile.ZipFile) -> int:
        if not self.uploads_dir.is_dir():
            return 0

        count = 0
        zf.writestr(f"{UPLOADS_MEMBER}/", "")
        for path in sorted(self.uploads_dir.rglob("*")):
            arcname = f"{UPLOADS_MEMBER}/{path.relative_to(self.uploads_dir).as_posix()}"
            if path.is_dir():
                zf.writestr(f"{arcname}/", "")
            else:
                zf.write(path, arcname)
                count += 1
        return count

    def _build_sync(self, dest_dir: Path) -> tuple[Path, dict[str, Any], int]:
        epoch_ms = int(time.time() * 1000)
        archive_path = dest_dir / f"arena-backup-{epoch_ms}.zip"
        tmp_archive = dest_dir / f".arena-backup-{epoch_ms}.zip.tmp"

        with tempfile.TemporaryDirectory() as tmpdir:
            db_copy = Path(tmpdir) / DATABASE_MEMBER
            schema_version = self._backup_database(db_copy)

            manifest = {
                "created_at": datetime.now(timezone.utc).isoformat(),
                "database_size": db_copy.stat().st_size,
                "database_sha256": compute_checksum(db_copy),
                "schema_version": schema_version,
            }

            try:
                dest_dir.mkdir(parents=True, exist_ok=True)
                with zipfile.ZipFile(tmp_archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                    zf.write(db_copy, DATABASE_MEMBER)
                    file_count = self._write_uploads(zf)
                    zf.writestr(MANIFEST_MEMBER, json.dumps(manifest, indent=2))
                os.replace(tmp_archive, archive_path)
            except OSError as e:
                tmp_archive.unlink(missing_ok=True)
                raise BackupIOError("archive write", str(archive_path), e) from e

        return archive_path, manifest, file_count

    async def build(self, dest_dir: str | Path) -> Path:
        """Create an archive bundle in ``dest_dir``.

        Returns:
            Path of the written archive

        Raises:
            ConcurrencyError: If another maintenance operation is running
            StorageUnavailableError: If the database is closed
            BackupIOError: If the bundle cannot be written
        """
        with self.guard.hold("archive"):
            archive_path, manifest, file_count = await asyncio.get_running_loop().run_in_executor(
                None, self._build_sync, Path(dest_dir)
            )

        logger.info(
            "Created archive",
            extra={
                "path": str(archive_path),
                "database_size": manifest["database_size"],
                "upload_files": file_count,
            },
        )
        return archive_path
