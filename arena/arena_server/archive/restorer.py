"""
Whole-system restore from an archive bundle.

The ArchiveRestorer replaces the live database file and the uploads tree
with the contents of a zip bundle:

    <archive>.zip
        database.sqlite        required, at the root
        uploads/...            optional, mirrors the live uploads tree
        manifest.json          optional, {"database_size", "database_sha256"}

Restore stages:
    Idle -> Extracting -> Validating -> ClosingConnection -> ReplacingDatabase
         -> ReplacingUploads -> Reinitializing -> Success | Failed
         -> CleaningUp (always)

Invariants:
    - Nothing live is touched until the archive has been extracted and
      validated (including a SQLite integrity check of the database file);
      an invalid archive leaves the system exactly as it was
    - The live database is copied to <db>.pre-restore-<epoch_ms> before it
      is overwritten; failsafe copies are never deleted automatically
    - An archive without uploads/ leaves the live uploads tree untouched
    - After any failure past validation the storage connection is reopened
      before the original error is re-raised; if the swapped-in file cannot
      be opened, the pre-restore copy is put back and opened instead
    - The extraction workspace is removed on every exit path
    - Restore holds the OperationGuard and runs under a deadline, checked
      between stages and between extracted members
    - Filesystem and SQLite work runs in the default executor; the event
      loop stays free to reject other requests while a restore is running

How to change safely:
    - Keep validation strictly before ClosingConnection
    - Test every new stage with an injected failure
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import shutil
import sqlite3
import time
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..errors import ArchiveInvalidError, BackupIOError, RestoreTimeoutError
from ..guard import OperationGuard
from ..storage.lifecycle import StorageManager

logger = logging.getLogger(__name__)

DATABASE_MEMBER = "database.sqlite"
UPLOADS_MEMBER = "uploads"
MANIFEST_MEMBER = "manifest.json"
WORKSPACE_NAME = ".restore-workspace"


class RestoreStage(Enum):
    """Stages of the restore state machine."""

    IDLE = "idle"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    CLOSING_CONNECTION = "closing_connection"
    REPLACING_DATABASE = "replacing_database"
    REPLACING_UPLOADS = "replacing_uploads"
    REINITIALIZING = "reinitializing"
    SUCCESS = "success"
    FAILED = "failed"
    CLEANING_UP = "cleaning_up"


@dataclass
class RestoreResult:
    """Result of a successful restore.

    Attributes:
        archive: Archive that was restored
        failsafe_path: Copy of the pre-restore database (None if there was
            no live database file)
        uploads_replaced: Whether the uploads tree was swapped
        duration_ms: Total restore duration
        stages: Stages visited, in order
    """

    archive: str
    failsafe_path: Path | None
    uploads_replaced: bool
    duration_ms: int
    stages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "archive": self.archive,
            "failsafe_path": str(self.failsafe_path) if self.failsafe_path else None,
            "uploads_replaced": self.uploads_replaced,
            "duration_ms": self.duration_ms,
            "stages": self.stages,
        }


def compute_checksum(file_path: str | Path) -> str:
    """Compute SHA-256 checksum of file."""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


class ArchiveRestorer:
    """Replaces live state with the contents of an archive bundle.

    Attributes:
        storage: Shared storage manager (closed and reopened by restore)
        guard: Maintenance guard shared with the snapshot codec
        data_root: Data root holding the workspace
        uploads_dir: Live uploads directory
        stage: Current stage, IDLE between restores

    Example:
        >>> restorer = ArchiveRestorer(storage, guard, "/srv/arena", "/srv/arena/uploads")
        >>> result = await restorer.restore("/tmp/arena-backup-1730000000000.zip")
        >>> result.failsafe_path
        PosixPath('/srv/arena/database.sqlite.pre-restore-1730000000123')
    """

    def __init__(
        self,
        storage: StorageManager,
        guard: OperationGuard,
        data_root: str | Path,
        uploads_dir: str | Path,
        timeout_seconds: float = 300.0,
        reopen_attempts: int = 3,
        reopen_delay_seconds: float = 0.5,
    ) -> None:
        """Initialize the restorer.

        Args:
            storage: Shared storage manager
            guard: Maintenance guard
            data_root: Directory holding the extraction workspace
            uploads_dir: Live uploads directory
            timeout_seconds: Deadline for the whole state machine
            reopen_attempts: Reopen retries after a failure
            reopen_delay_seconds: Delay between reopen retries
        """
        self.storage = storage
        self.guard = guard
        self.data_root = Path(data_root)
        self.uploads_dir = Path(uploads_dir)
        self.timeout_seconds = timeout_seconds
        self.reopen_attempts = max(1, reopen_attempts)
        self.reopen_delay_seconds = reopen_delay_seconds
        self.stage = RestoreStage.IDLE
        self._stages: list[str] = []
        self._deadline = 0.0
        self._failsafe_path: Path | None = None

    @property
    def workspace(self) -> Path:
        """Temporary extraction directory inside the data root."""
        return self.data_root / WORKSPACE_NAME

    def _check_deadline(self, stage: RestoreStage) -> None:
        if time.monotonic() > self._deadline:
            raise RestoreTimeoutError(self.timeout_seconds, stage.value)

    def _enter(self, stage: RestoreStage) -> None:
        self._check_deadline(stage)
        self.stage = stage
        self._stages.append(stage.value)
        logger.debug(f"Restore stage: {stage.value}")

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    async def restore(self, archive_path: str | Path) -> RestoreResult:
        """Restore the database and uploads tree from an archive.

        Args:
            archive_path: Zip bundle to restore from

        Returns:
            RestoreResult describing the completed restore

        Raises:
            ConcurrencyError: If another maintenance operation is running
            ArchiveInvalidError: If the archive is unusable (nothing touched)
            BackupIOError: If a filesystem step fails
            StorageConnectionError: If the restored database cannot be opened
            RestoreTimeoutError: If the deadline expires between stages or
                while extracting
        """
        archive_path = Path(archive_path)

        with self.guard.hold("restore"):
            start_time = time.time()
            self._deadline = time.monotonic() + self.timeout_seconds
            self._stages = []
            self._failsafe_path = None
            live_touched = False

            logger.info("Starting restore", extra={"archive": str(archive_path)})

            try:
                self._enter(RestoreStage.EXTRACTING)
                await self._run(self._extract, archive_path)

                self._enter(RestoreStage.VALIDATING)
                db_file = await self._run(self._validate, archive_path)

                live_touched = True
                self._enter(RestoreStage.CLOSING_CONNECTION)
                await self.storage.close()

                self._enter(RestoreStage.REPLACING_DATABASE)
                failsafe_path = await self._run(self._replace_database, db_file)

                self._enter(RestoreStage.REPLACING_UPLOADS)
                uploads_replaced = await self._run(self._replace_uploads)

                self._enter(RestoreStage.REINITIALIZING)
                await self.storage.reinitialize()

                self.stage = RestoreStage.SUCCESS
                self._stages.append(self.stage.value)

            except BaseException as e:
                self.stage = RestoreStage.FAILED
                self._stages.append(self.stage.value)
                logger.error(
                    f"Restore failed: {e}",
                    extra={"archive": str(archive_path), "stages": list(self._stages)},
                )
                if live_touched:
                    await self._recover()
                raise

            finally:
                self.stage = RestoreStage.CLEANING_UP
                await self._run(self._cleanup)
                self.stage = RestoreStage.IDLE

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Restore completed",
            extra={
                "archive": str(archive_path),
                "failsafe_path": str(failsafe_path) if failsafe_path else None,
                "uploads_replaced": uploads_replaced,
                "duration_ms": duration_ms,
            },
        )
        return RestoreResult(
            archive=str(archive_path),
            failsafe_path=failsafe_path,
            uploads_replaced=uploads_replaced,
            duration_ms=duration_ms,
            stages=list(self._stages),
        )

    # ========== Stages ==========

    def _extract(self, archive_path: Path) -> None:
        """Unpack the archive into a fresh workspace."""
        workspace = self.workspace
        try:
            if workspace.exists():
                logger.warning(f"Removing stale restore workspace: {workspace}")
                shutil.rmtree(workspace)
            workspace.mkdir(parents=True)
        except OSError as e:
            raise BackupIOError("workspace setup", str(workspace), e) from e

        root = workspace.resolve()
        try:
            with zipfile.ZipFile(archive_path) as zf:
                members = zf.namelist()
                for member in members:
                    target = (root / member).resolve()
                    if target != root and root not in target.parents:
                        raise ArchiveInvalidError(
                            f"Archive entry escapes extraction directory: {member}",
                            archive=str(archive_path),
                        )
                for member in members:
                    self._check_deadline(RestoreStage.EXTRACTING)
                    zf.extract(member, root)
        except zipfile.BadZipFile as e:
            raise ArchiveInvalidError(
                f"Archive is corrupt or not a zip file: {e}", archive=str(archive_path)
            ) from e
        except OSError as e:
            raise BackupIOError("extract", str(archive_path), e) from e

    def _validate(self, archive_path: Path) -> Path:
        """Check the workspace holds a usable database file."""
        db_file = self.workspace / DATABASE_MEMBER
        if not db_file.is_file():
            raise ArchiveInvalidError(
                f"Archive does not contain {DATABASE_MEMBER} at its root",
                archive=str(archive_path),
            )

        manifest_file = self.workspace / MANIFEST_MEMBER
        if manifest_file.is_file():
            self._check_manifest(manifest_file, db_file, archive_path)

        self._check_integrity(db_file, archive_path)
        return db_file

    def _check_integrity(self, db_file: Path, archive_path: Path) -> None:
        """Run PRAGMA quick_check on the extracted copy (never the live file)."""
        try:
            conn = sqlite3.connect(str(db_file))
            try:
                result = conn.execute("PRAGMA quick_check").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ArchiveInvalidError(
                f"{DATABASE_MEMBER} is not a usable SQLite database: {e}",
                archive=str(archive_path),
            ) from e

        if result is None or result[0] != "ok":
            raise ArchiveInvalidError(
                f"{DATABASE_MEMBER} failed integrity check: {result[0] if result else 'no result'}",
                archive=str(archive_path),
            )

    def _check_manifest(self, manifest_file: Path, db_file: Path, archive_path: Path) -> None:
        try:
            manifest = json.loads(manifest_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ArchiveInvalidError(
                f"Archive manifest is not valid JSON: {e}", archive=str(archive_path)
            ) from e

        if not isinstance(manifest, dict):
            raise ArchiveInvalidError("Archive manifest must be an object", archive=str(archive_path))

        expected_size = manifest.get("database_size")
        if expected_size is not None and db_file.stat().st_size != expected_size:
            raise ArchiveInvalidError(
                f"Database size {db_file.stat().st_size} does not match manifest {expected_size}",
                archive=str(archive_path),
            )

        expected_sha = manifest.get("database_sha256")
        if expected_sha is not None:
            actual_sha = compute_checksum(db_file)
            if actual_sha != expected_sha:
                raise ArchiveInvalidError(
                    "Database checksum does not match manifest", archive=str(archive_path)
                )

    def _replace_database(self, db_file: Path) -> Path | None:
        """Copy the live database aside, then overwrite it."""
        live = self.storage.db_path
        failsafe_path = None

        try:
            if live.exists():
                failsafe_path = live.with_name(f"{live.name}.pre-restore-{int(time.time() * 1000)}")
                shutil.copy2(live, failsafe_path)
                self._failsafe_path = failsafe_path
                logger.info(f"Backed up existing database to {failsafe_path}")

            # Stale WAL/SHM files would be replayed onto the new database
            for suffix in ("-wal", "-shm"):
                live.with_name(live.name + suffix).unlink(missing_ok=True)

            tmp_path = live.with_name(f".{live.name}.restore-tmp")
            shutil.copy2(db_file, tmp_path)
            os.replace(tmp_path, live)
        except OSError as e:
            raise BackupIOError("database replace", str(live), e) from e

        return failsafe_path

    def _replace_uploads(self) -> bool:
        """Swap in the archived uploads tree, if the archive has one."""
        source = self.workspace / UPLOADS_MEMBER
        live = self.uploads_dir

        if not source.is_dir():
            try:
                live.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise BackupIOError("uploads mkdir", str(live), e) from e
            logger.info("Archive has no uploads directory; live uploads left untouched")
            return False

        aside = live.with_name(f".{live.name}.replaced-{int(time.time() * 1000)}")
        live_existed = live.exists()
        moved_aside = False
        try:
            if live_existed:
                os.rename(live, aside)
                moved_aside = True
            try:
                os.rename(source, live)
            except OSError:
                logger.info("Uploads rename failed, falling back to recursive copy")
                shutil.copytree(source, live)
        except OSError as e:
            # Live path no longer holds the original tree: drop any partial copy
            if moved_aside or not live_existed:
                shutil.rmtree(live, ignore_errors=True)
            if moved_aside:
                os.rename(aside, live)
            raise BackupIOError("uploads replace", str(live), e) from e

        if aside.exists():
            try:
                shutil.rmtree(aside)
            except OSError as e:
                logger.warning(f"Could not remove previous uploads at {aside}: {e}")

        return True

    # ========== Recovery / cleanup ==========

    async def _recover(self) -> bool:
        """Reopen storage so the service keeps a database handle.

        Tries the file currently at the live path first. If that cannot be
        opened and a pre-restore copy was taken, the copy is put back over
        the live path and opened instead.
        """
        if await self._reopen():
            return True

        failsafe_path = self._failsafe_path
        if failsafe_path is None or not failsafe_path.exists():
            logger.critical(
                "Storage could not be reopened and no pre-restore copy exists",
                extra={"database": str(self.storage.db_path)},
            )
            return False

        logger.warning(
            "Reinstating pre-restore database",
            extra={"failsafe_path": str(failsafe_path), "database": str(self.storage.db_path)},
        )
        try:
            await self._run(self._reinstate, failsafe_path)
        except OSError as e:
            logger.critical(
                f"Could not reinstate pre-restore database: {e}",
                extra={"failsafe_path": str(failsafe_path)},
            )
            return False

        if await self._reopen():
            return True

        logger.critical(
            "Storage could not be reopened; recover manually from the pre-restore copy",
            extra={"database": str(self.storage.db_path), "failsafe_path": str(failsafe_path)},
        )
        return False

    def _reinstate(self, failsafe_path: Path) -> None:
        """Copy the pre-restore database back over the live path (copy is kept)."""
        live = self.storage.db_path
        for suffix in ("-wal", "-shm"):
            live.with_name(live.name + suffix).unlink(missing_ok=True)
        tmp_path = live.with_name(f".{live.name}.reinstate-tmp")
        shutil.copy2(failsafe_path, tmp_path)
        os.replace(tmp_path, live)

    async def _reopen(self) -> bool:
        for attempt in range(1, self.reopen_attempts + 1):
            try:
                await self.storage.open()
                logger.info("Storage reopened after failed restore", extra={"attempt": attempt})
                return True
            except Exception as e:
                logger.error(
                    f"Reopen after failed restore failed (attempt {attempt}): {e}",
                    exc_info=True,
                )
                if attempt < self.reopen_attempts:
                    await asyncio.sleep(self.reopen_delay_seconds)
        return False

    def _cleanup(self) -> None:
        try:
            shutil.rmtree(self.workspace)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove restore workspace {self.workspace}: {e}")
