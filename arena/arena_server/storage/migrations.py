"""
Versioned schema migrations for the Arena database.

Migrations are an ordered list applied exactly once each. Applied versions
are recorded in the ``schema_version`` table. Column additions inspect
``PRAGMA table_info`` before altering so that databases upgraded by older
code (column present, version row missing) are adopted without error.

Table schema:
    teams:
        - id INTEGER PRIMARY KEY
        - team_name TEXT UNIQUE
        - school_name TEXT
        - category TEXT ('Primary' | 'Secondary')
        - login_password TEXT
        - must_change_password INTEGER (v2)
        - created_at DATETIME

    submissions:
        - id INTEGER PRIMARY KEY
        - team_id INTEGER -> teams
        - submission_type TEXT ('file' | 'link' | 'robot_run')
        - file_path / external_link / original_filename TEXT
        - concept_score [0,40], future_score [0,30],
          organization_score [0,20], aesthetics_score [0,10]
        - assessed_by TEXT, assessed_at / submitted_at DATETIME

    scores:
        - id INTEGER PRIMARY KEY
        - team_id INTEGER -> teams
        - judge_name TEXT, mission_data TEXT (JSON)
        - mission1..mission7 INTEGER, total_score INTEGER
        - completion_time_seconds INTEGER (>= 0)
        - mechanical_design_score INTEGER (v3)
        - judge_notes TEXT, created_at DATETIME

    announcements:
        - id, title, content, priority ('low' | 'medium' | 'high')
        - is_pinned INTEGER, is_active INTEGER (v4)
        - created_at, expires_at

    tickets:
        - id, team_id? -> teams, name, email, category, urgency
        - description, file_path, status ('Open' | 'Pending' | 'Resolved')
        - created_at

    ticket_messages:
        - id, ticket_id -> tickets ON DELETE CASCADE
        - sender_role ('admin' | 'user'), message, created_at

How to change safely:
    - Append new migrations; never edit or reorder applied ones
    - Only additive changes (new tables, new nullable/defaulted columns)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import MigrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """A single schema migration.

    Attributes:
        version: Monotonic version number
        description: Short human-readable summary
        apply: Callable executing the migration on a connection
    """

    version: int
    description: str
    apply: Callable[[sqlite3.Connection], None]


def _create_base_tables(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS teams (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            team_name TEXT UNIQUE NOT NULL,
            school_name TEXT NOT NULL,
            category TEXT CHECK(category IN ('Primary', 'Secondary')) NOT NULL,
            login_password TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS submissions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            team_id INTEGER REFERENCES teams(id),
            submission_type TEXT CHECK(submission_type IN ('file', 'link', 'robot_run')) NOT NULL,
            file_path TEXT,
            external_link TEXT,
            original_filename TEXT,
            submitted_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            concept_score INTEGER CHECK(concept_score BETWEEN 0 AND 40),
            future_score INTEGER CHECK(future_score BETWEEN 0 AND 30),
            organization_score INTEGER CHECK(organization_score BETWEEN 0 AND 20),
            aesthetics_score INTEGER CHECK(aesthetics_score BETWEEN 0 AND 10),
            assessed_by TEXT,
            assessed_at DATETIME
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS scores (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            team_id INTEGER REFERENCES teams(id),
            judge_name TEXT NOT NULL,
            mission_data TEXT NOT NULL,
            mission1 INTEGER DEFAULT 0,
            mission2 INTEGER DEFAULT 0,
            mission3 INTEGER DEFAULT 0,
            mission4 INTEGER DEFAULT 0,
            mission5 INTEGER DEFAULT 0,
            mission6 INTEGER DEFAULT 0,
            mission7 INTEGER DEFAULT 0,
            total_score INTEGER DEFAULT 0,
            completion_time_seconds INTEGER CHECK(completion_time_seconds >= 0),
            judge_notes TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS announcements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            priority TEXT CHECK(priority IN ('low', 'medium', 'high')) DEFAULT 'medium',
            is_pinned INTEGER DEFAULT 0,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            expires_at DATETIME
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS tickets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            team_id INTEGER REFERENCES teams(id),
            name TEXT,
            email TEXT,
            category TEXT NOT NULL,
            urgency TEXT NOT NULL,
            description TEXT NOT NULL,
            file_path TEXT,
            status TEXT DEFAULT 'Open',
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS ticket_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
            sender_role TEXT CHECK(sender_role IN ('admin', 'user')) NOT NULL,
            message TEXT NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_submissions_team ON submissions(team_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_scores_team ON scores(team_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tickets_team ON tickets(team_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_ticket_messages_ticket ON ticket_messages(ticket_id)"
    )


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check whether ``table`` already has ``column``."""
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def _add_column(table: str, column: str, definition: str) -> Callable[[sqlite3.Connection], None]:
    def apply(conn: sqlite3.Connection) -> None:
        if column_exists(conn, table, column):
            logger.debug(f"Column {table}.{column} already present, skipping ALTER")
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    return apply


MIGRATIONS: list[Migration] = [
    Migration(1, "base tables", _create_base_tables),
    Migration(
        2,
        "teams.must_change_password",
        _add_column("teams", "must_change_password", "INTEGER NOT NULL DEFAULT 1"),
    ),
    Migration(
        3,
        "scores.mechanical_design_score",
        _add_column("scores", "mechanical_design_score", "INTEGER NOT NULL DEFAULT 0"),
    ),
    Migration(
        4,
        "announcements.is_active",
        _add_column("announcements", "is_active", "INTEGER NOT NULL DEFAULT 1"),
    ),
]

LATEST_VERSION = MIGRATIONS[-1].version


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at INTEGER NOT NULL
        )
    """)


def applied_versions(conn: sqlite3.Connection) -> set[int]:
    """Return the set of migration versions recorded as applied."""
    _ensure_version_table(conn)
    return {row[0] for row in conn.execute("SELECT version FROM schema_version")}


def current_version(conn: sqlite3.Connection) -> int:
    versions = applied_versions(conn)
    return max(versions) if versions else 0


def apply_migrations(
    conn: sqlite3.Connection,
    migrations: list[Migration] | None = None,
) -> list[int]:
    """Apply every migration not yet recorded.

    Each migration runs in its own transaction together with its
    ``schema_version`` row. A failure rolls back that migration only and is
    raised as MigrationError; earlier migrations stay applied.

    Args:
        conn: Connection in autocommit mode (isolation_level=None)
        migrations: Migration list (defaults to MIGRATIONS)

    Returns:
        Versions applied by this call, in order
    """
    migrations = MIGRATIONS if migrations is None else migrations
    done = applied_versions(conn)
    applied = []

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue

        conn.execute("BEGIN IMMEDIATE")
        try:
            migration.apply(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (migration.version, int(time.time() * 1000)),
            )
            conn.execute("COMMIT")
        except Exception as e:
            conn.execute("ROLLBACK")
            logger.error(
                f"Migration {migration.version} ({migration.description}) failed: {e}",
                exc_info=True,
            )
            raise MigrationError(migration.version, e) from e

        applied.append(migration.version)
        logger.info(
            "Applied migration",
            extra={"version": migration.version, "description": migration.description},
        )

    return applied
