"""
Configuration for Arena Server.

Uses pydantic-settings for environment variable loading. Every setting can
be overridden with an ``ARENA_``-prefixed environment variable, e.g.
``ARENA_DATA_DIR=/srv/arena``.

Invariants:
    - All settings have sensible defaults for local development
    - The data root holds the database, uploads tree, and backups directory
    - The backup key is never logged
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Server configuration loaded from environment."""

    # Storage layout
    data_dir: str = Field(default="./data", description="Data root directory")
    database_name: str = Field(default="database.sqlite", description="Live database file name")
    uploads_dir_name: str = Field(default="uploads", description="Uploads directory name")
    backups_dir_name: str = Field(default="backups", description="Snapshot directory name")

    # SQLite tuning
    wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")
    busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")

    # Snapshot / restore
    retention_count: int = Field(default=50, description="Snapshot files kept on disk")
    restore_timeout_seconds: float = Field(default=300.0, description="Restore deadline")
    reopen_attempts: int = Field(default=3, description="Reopen retries after failed restore")
    reopen_delay_seconds: float = Field(default=0.5, description="Delay between reopen retries")

    # Operator access
    backup_key: str | None = Field(default=None, description="Shared key for admin routes")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json, text)")

    # HTTP
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=3001, description="Bind port")
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    model_config = {"env_prefix": "ARENA_"}

    @property
    def data_root(self) -> Path:
        return Path(self.data_dir)

    @property
    def database_path(self) -> Path:
        """Live database file."""
        return self.data_root / self.database_name

    @property
    def uploads_dir(self) -> Path:
        return self.data_root / self.uploads_dir_name

    @property
    def backups_dir(self) -> Path:
        return self.data_root / self.backups_dir_name

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.data_dir,
                "database": str(self.database_path),
                "wal_mode": self.wal_mode,
                "retention_count": self.retention_count,
                "restore_timeout_seconds": self.restore_timeout_seconds,
                "backup_key_set": self.backup_key is not None,
                "log_level": self.log_level,
            },
        )
