"""
Storage lifecycle for the Arena database.

StorageManager owns the single shared SQLite connection for the process.
Every component that needs the database receives the manager and asks it
for the connection; none of them opens its own handle. Restore closes the
manager while it swaps the database file and reinitializes it afterward.

Invariants:
    - At most one live connection per manager
    - connection() never hangs: it returns the live handle or raises
      StorageUnavailableError when the manager is closed
    - Every open connection runs with WAL journaling (configurable),
      synchronous=NORMAL and foreign keys enforced
    - Schema migrations run on every (re)open and are idempotent
    - open/close do their file work in the default executor; the lock is
      only ever held inside that synchronous work, never across an await

How to change safely:
    - New pragmas go in _configure()
    - Schema changes go in migrations.py, never here
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import StorageConnectionError, StorageUnavailableError
from .migrations import apply_migrations, current_version

logger = logging.getLogger(__name__)


class StorageManager:
    """Owner of the shared SQLite handle.

    Thread safety:
        The connection is created with check_same_thread=False; access is
        serialized by an internal re-entrant lock held by transaction(),
        locked() and the synchronous halves of open/close. Callers on an
        event loop should reach it through run_in_executor.

    Example:
        >>> storage = StorageManager("/srv/arena/database.sqlite")
        >>> await storage.open()
        >>> with storage.transaction() as conn:
        ...     conn.execute("INSERT INTO announcements (title, content) VALUES ('a', 'b')")
        >>> await storage.close()
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the manager (does not open the database).

        Args:
            db_path: Live database file path
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _configure(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        # Reads the file header; fails on anything that is not a database
        conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()

    async def open(self) -> sqlite3.Connection:
        """Open the database and apply migrations.

        Opening an already-open manager returns the existing handle.

        Returns:
            The live connection

        Raises:
            StorageConnectionError: If the database cannot be opened
            MigrationError: If a migration fails
        """
        return await asyncio.get_running_loop().run_in_executor(None, self._open_sync)

    def _open_sync(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn

            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.busy_timeout_ms / 1000.0,
                    isolation_level=None,  # Autocommit by default, explicit transactions
                    check_same_thread=False,
                )
            except (sqlite3.Error, OSError) as e:
                raise StorageConnectionError(
                    f"Cannot open database: {e}", database=str(self.db_path)
                ) from e

            conn.row_factory = sqlite3.Row
            try:
                self._configure(conn)
            except sqlite3.Error as e:
                conn.close()
                raise StorageConnectionError(
                    f"Cannot configure database: {e}", database=str(self.db_path)
                ) from e

            self._conn = conn
            try:
                self.ensure_schema()
            except Exception:
                self._conn = None
                conn.close()
                raise

            logger.info(
                "Opened database",
                extra={"database": str(self.db_path), "schema_version": current_version(conn)},
            )
            return conn

    def ensure_schema(self) -> list[int]:
        """Create tables and apply pending migrations.

        Returns:
            Versions applied by this call
        """
        with self._lock:
            return apply_migrations(self.connection())

    async def close(self) -> None:
        """Flush and release the handle. No-op when already closed."""
        await asyncio.get_running_loop().run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            conn = self._conn
            if conn is None:
                return

            self._conn = None
            try:
                if conn.in_transaction:
                    conn.execute("COMMIT")
                if self.wal_mode:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                logger.warning(f"Error flushing database before close: {e}")
            finally:
                conn.close()

            logger.info("Closed database", extra={"database": str(self.db_path)})

    async def reinitialize(self) -> sqlite3.Connection:
        """Close (if open), reopen and re-apply migrations."""
        await self.close()
        return await self.open()

    def connection(self) -> sqlite3.Connection:
        """Get the live connection.

        Raises:
            StorageUnavailableError: If the manager is closed
        """
        conn = self._conn
        if conn is None:
            raise StorageUnavailableError()
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE / COMMIT.

        Rolls back and re-raises on any exception.
        """
        with self._lock:
            conn = self.connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    @contextmanager
    def locked(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection lock for a sequence of reads."""
        with self._lock:
            yield self.connection()
