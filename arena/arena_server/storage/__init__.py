"""
Storage module for Arena Server.

This module handles:
- The single shared SQLite handle and its lifecycle (open/close/reinitialize)
- Versioned, additive schema migrations
- Entity listings and row writes for the six competition tables

Invariants:
    - Only StorageManager holds the live connection
    - SQLite runs in WAL mode with synchronous=NORMAL and foreign keys on
    - Migrations are applied exactly once and recorded in schema_version
"""

from .entities import DELETE_ORDER, ENTITY_TABLES, INSERT_ORDER, EntityStore, UnknownTableError
from .lifecycle import StorageManager
from .migrations import LATEST_VERSION, MIGRATIONS, Migration, apply_migrations

__all__ = [
    "StorageManager",
    "EntityStore",
    "UnknownTableError",
    "ENTITY_TABLES",
    "DELETE_ORDER",
    "INSERT_ORDER",
    "Migration",
    "MIGRATIONS",
    "LATEST_VERSION",
    "apply_migrations",
]
