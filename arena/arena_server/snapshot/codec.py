"""
JSON snapshot export and import for the Arena database.

A snapshot is a single self-describing JSON document holding every row of
the six competition tables:

    {
        "timestamp": "2026-03-14T09:30:00.123456+00:00",
        "teams": [...],
        "submissions": [...],
        "scores": [...],
        "announcements": [...],
        "tickets": [...],
        "ticket_messages": [...]
    }

Snapshots are written to ``<data_root>/backups/backup-<epoch_ms>.json``.

Invariants:
    - Export reads every table in full, ordered by primary key
    - A snapshot file appears under its final name only once fully written
      (write to temp, fsync, atomic rename)
    - Import replaces all six tables in one transaction; on failure the
      live dataset is unchanged
    - Primary keys are preserved across export/import
    - Export and import hold the OperationGuard for their whole duration
    - Table reads, row inserts and file writes run in the default executor
      so the event loop keeps serving other requests

How to change safely:
    - Add new top-level keys, never rename existing ones
    - Keep importing snapshots that lack newer keys or columns
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import BackupIOError, SnapshotFormatError, SnapshotTransactionError
from ..guard import OperationGuard
from ..storage.entities import DELETE_ORDER, ENTITY_TABLES, INSERT_ORDER, fetch_all, table_columns
from ..storage.lifecycle import StorageManager
from .retention import RetentionPolicy, list_snapshot_files

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass
class SnapshotFile:
    """A snapshot document on disk.

    Attributes:
        name: File name (backup-<epoch_ms>.json)
        size: Size in bytes
        created: Modification time, ISO-8601 UTC
    """

    name: str
    size: int
    created: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "size": self.size, "created": self.created}


class SnapshotCodec:
    """Exports and imports the full dataset as JSON snapshots.

    Example:
        >>> codec = SnapshotCodec(storage, guard, "/srv/arena/backups")
        >>> path = await codec.export()
        >>> await codec.import_file(path)
    """

    def __init__(
        self,
        storage: StorageManager,
        guard: OperationGuard,
        backups_dir: str | Path,
        retention: RetentionPolicy | None = None,
    ) -> None:
        """Initialize the codec.

        Args:
            storage: Shared storage manager
            guard: Maintenance guard shared with the restorer
            backups_dir: Directory for snapshot files
            retention: Retention policy (defaults to keeping 50)
        """
        self.storage = storage
        self.guard = guard
        self.backups_dir = Path(backups_dir)
        self.retention = retention or RetentionPolicy(self.backups_dir)

    # ========== Export ==========

    def dump(self) -> dict[str, Any]:
        """Read all six tables into a snapshot document."""
        document: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with self.storage.locked() as conn:
            for table in ENTITY_TABLES:
                document[table] = fetch_all(conn, table)
        return document

    def _next_path(self) -> Path:
        epoch_ms = int(time.time() * 1000)
        path = self.backups_dir / f"backup-{epoch_ms}.json"
        while path.exists():
            epoch_ms += 1
            path = self.backups_dir / f"backup-{epoch_ms}.json"
        return path

    def _write_atomic(self, path: Path, document: dict[str, Any]) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise BackupIOError("snapshot write", str(path), e) from e

    def _export_sync(self) -> tuple[Path, dict[str, Any]]:
        document = self.dump()

        try:
            self.backups_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupIOError("mkdir", str(self.backups_dir), e) from e

        path = self._next_path()
        self._write_atomic(path, document)
        self.retention.prune(protect=path)
        return path, document

    async def export(self) -> Path:
        """Write a snapshot of the live dataset and apply retention.

        Returns:
            Path of the written snapshot

        Raises:
            ConcurrencyError: If another maintenance operation is running
            StorageUnavailableError: If the database is closed
            BackupIOError: If the snapshot cannot be written
        """
        with self.guard.hold("export"):
            path, document = await asyncio.get_running_loop().run_in_executor(
                None, self._export_sync
            )

        logger.info(
            "Created snapshot",
            extra={
                "path": str(path),
                "rows": {table: len(document[table]) for table in ENTITY_TABLES},
            },
        )
        return path

    # ========== Import ==========

    def load(self, path: str | Path) -> dict[str, Any]:
        """Read and parse a snapshot file."""
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise SnapshotFormatError(f"Snapshot is not valid JSON: {path.name} ({e})") from e
        except OSError as e:
            raise BackupIOError("snapshot read", str(path), e) from e

        self.validate(document)
        return document

    @staticmethod
    def validate(document: Any) -> None:
        """Check the document shape before touching the database.

        Raises:
            SnapshotFormatError: If the document is not an object, or an
                entity value is not a list of objects
        """
        if not isinstance(document, dict):
            raise SnapshotFormatError("Snapshot must be a JSON object")

        for table in ENTITY_TABLES:
            if table not in document:
                continue
            rows = document[table]
            if not isinstance(rows, list):
                raise SnapshotFormatError(f"Snapshot key '{table}' must be a list")
            if any(not isinstance(row, dict) for row in rows):
                raise SnapshotFormatError(f"Snapshot key '{table}' must contain objects")

    def _replace_all(self, conn: sqlite3.Connection, document: dict[str, Any]) -> dict[str, int]:
        for table in DELETE_ORDER:
            conn.execute(f"DELETE FROM {table}")

        inserted = {}
        for table in INSERT_ORDER:
            rows = document.get(table)
            if rows is None:
                # Table stays emptied; older snapshots predate some tables
                inserted[table] = 0
                continue

            columns = table_columns(conn, table)
            for row in rows:
                present = [c for c in columns if c in row]
                if not present:
                    conn.execute(f"INSERT INTO {table} DEFAULT VALUES")
                    continue
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(present)}) "
                    f"VALUES ({', '.join('?' for _ in present)})",
                    tuple(row[c] for c in present),
                )
            inserted[table] = len(rows)

        return inserted

    def _import_sync(self, document: dict[str, Any]) -> dict[str, int]:
        with self.storage.transaction() as conn:
            return self._replace_all(conn, document)

    async def import_snapshot(self, document: dict[str, Any]) -> dict[str, int]:
        """Replace the live contents of all six tables with a snapshot.

        Args:
            document: Parsed snapshot document

        Returns:
            Rows inserted per table

        Raises:
            SnapshotFormatError: If the document is malformed (nothing changed)
            SnapshotTransactionError: If any delete/insert fails (rolled back)
            ConcurrencyError: If another maintenance operation is running
        """
        self.validate(document)

        missing = [table for table in ENTITY_TABLES if table not in document]
        if missing:
            logger.warning(
                "Snapshot lacks entity arrays; those tables will be emptied",
                extra={"missing": missing},
            )

        with self.guard.hold("import"):
            try:
                inserted = await asyncio.get_running_loop().run_in_executor(
                    None, self._import_sync, document
                )
            except (sqlite3.Error, TypeError, ValueError) as e:
                logger.error(f"Snapshot import rolled back: {e}")
                raise SnapshotTransactionError(f"Snapshot import failed: {e}") from e

        logger.info(
            "Imported snapshot",
            extra={"snapshot_timestamp": document.get("timestamp"), "rows": inserted},
        )
        return inserted

    async def import_file(self, path: str | Path) -> dict[str, int]:
        """Load a snapshot file and import it."""
        document = await asyncio.get_running_loop().run_in_executor(None, self.load, path)
        return await self.import_snapshot(document)

    # ========== Listing ==========

    def list_snapshots(self) -> list[SnapshotFile]:
        """Snapshot files on disk, newest first."""
        snapshots = []
        for path in list_snapshot_files(self.backups_dir):
            stat = path.stat()
            snapshots.append(
                SnapshotFile(
                    name=path.name,
                    size=stat.st_size,
                    created=datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
                )
            )
        return snapshots

    def snapshot_path(self, filename: str) -> Path | None:
        """Resolve a snapshot file name, refusing anything outside backups_dir."""
        sanitized = _SAFE_NAME.sub("", filename)
        backups_dir = self.backups_dir.resolve()
        path = (backups_dir / sanitized).resolve()
        if path.parent != backups_dir or not path.is_file():
            return None
        return path
