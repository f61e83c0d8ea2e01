"""
Error types for Arena Server snapshot and restore.

This module defines all exception types raised by the backup subsystem:
- ArenaBackupError: Base exception
- ArchiveInvalidError: Uploaded bundle is unusable
- BackupIOError: Filesystem failure during extraction, copy or rename
- StorageConnectionError: Database handle could not be opened
- StorageUnavailableError: Handle is closed for maintenance (retryable)
- SnapshotTransactionError: Import transaction failed and was rolled back
- SnapshotFormatError: Snapshot document is malformed
- ConcurrencyError: Another export/import/restore is in flight
- StorageBusyError: A write was attempted during maintenance (retryable)
- RestoreTimeoutError: Restore exceeded its deadline
- MigrationError: Schema migration failed

Invariants:
    - All errors inherit from ArenaBackupError
    - Every error carries a stable code for the HTTP layer
    - Retryable errors set ``retryable = True``
"""

from __future__ import annotations

from typing import Any


class ArenaBackupError(Exception):
    """Base exception for all snapshot/restore errors.

    Attributes:
        message: Human-readable error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "BACKUP_ERROR"
        self.details = details or {}


class ArchiveInvalidError(ArenaBackupError):
    """Archive is corrupt, incomplete, or fails manifest validation.

    Raised before any live state has been touched.
    """

    def __init__(self, message: str, archive: str | None = None) -> None:
        super().__init__(message, code="ARCHIVE_INVALID", details={"archive": archive})


class BackupIOError(ArenaBackupError):
    """Filesystem operation failed."""

    def __init__(self, operation: str, path: str, cause: Exception | None = None) -> None:
        msg = f"I/O error during {operation}: {path}"
        if cause:
            msg += f" ({cause})"
        super().__init__(
            msg,
            code="IO_ERROR",
            details={"operation": operation, "path": path},
        )
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageConnectionError(ArenaBackupError):
    """The storage handle could not be opened or reopened."""

    def __init__(self, message: str, database: str | None = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR", details={"database": database})


class StorageUnavailableError(StorageConnectionError):
    """The storage handle is closed, typically while a restore swaps files.

    Callers should treat this as transient and retry.
    """

    retryable = True

    def __init__(self, message: str = "Storage is temporarily unavailable") -> None:
        super().__init__(message)
        self.code = "STORAGE_UNAVAILABLE"


class SnapshotTransactionError(ArenaBackupError):
    """Snapshot import failed; the transaction was rolled back."""

    def __init__(self, message: str, table: str | None = None) -> None:
        super().__init__(message, code="TRANSACTION_ERROR", details={"table": table})
        self.table = table


class SnapshotFormatError(ArenaBackupError):
    """Snapshot document does not have the expected shape."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SNAPSHOT_FORMAT")


class ConcurrencyError(ArenaBackupError):
    """A maintenance operation is already in progress."""

    def __init__(self, requested: str, active: str | None) -> None:
        super().__init__(
            f"Cannot start {requested}: {active or 'another operation'} is in progress",
            code="CONCURRENCY",
            details={"requested": requested, "active": active},
        )
        self.requested = requested
        self.active = active


class StorageBusyError(ArenaBackupError):
    """A write was rejected because a maintenance operation holds the guard."""

    retryable = True

    def __init__(self, active: str | None) -> None:
        super().__init__(
            f"Storage is busy ({active or 'maintenance'} in progress), retry later",
            code="STORAGE_BUSY",
            details={"active": active},
        )
        self.active = active


class RestoreTimeoutError(ArenaBackupError):
    """Restore exceeded its deadline and was aborted."""

    def __init__(self, timeout_seconds: float, stage: str) -> None:
        super().__init__(
            f"Restore timed out after {timeout_seconds}s (at {stage})",
            code="RESTORE_TIMEOUT",
            details={"timeout_seconds": timeout_seconds, "stage": stage},
        )
        self.stage = stage


class MigrationError(ArenaBackupError):
    """A schema migration failed to apply."""

    def __init__(self, version: int, cause: Exception) -> None:
        super().__init__(
            f"Migration {version} failed: {cause}",
            code="MIGRATION_ERROR",
            details={"version": version},
        )
        self.version = version
