"""
Unit tests for versioned schema migrations.

Tests cover:
- Fresh database gets every table and version
- Re-running is a no-op
- Databases upgraded by older code are adopted
- A failing migration is rolled back and reported
"""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from arena.arena_server.errors import MigrationError
from arena.arena_server.storage.entities import ENTITY_TABLES
from arena.arena_server.storage.migrations import (
    LATEST_VERSION,
    MIGRATIONS,
    Migration,
    apply_migrations,
    applied_versions,
    column_exists,
    current_version,
)


class TestMigrations:
    """Tests for apply_migrations."""

    @pytest.fixture
    def conn(self):
        """Autocommit connection on a temporary database."""
        with tempfile.TemporaryDirectory() as tmpdir:
            conn = sqlite3.connect(str(Path(tmpdir) / "test.sqlite"), isolation_level=None)
            yield conn
            conn.close()

    def test_fresh_database(self, conn):
        """All tables are created and all versions recorded."""
        applied = apply_migrations(conn)

        assert applied == [m.version for m in MIGRATIONS]
        assert current_version(conn) == LATEST_VERSION

        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert set(ENTITY_TABLES) <= tables
        assert column_exists(conn, "teams", "must_change_password")
        assert column_exists(conn, "scores", "mechanical_design_score")
        assert column_exists(conn, "announcements", "is_active")

    def test_idempotent(self, conn):
        """Second run applies nothing."""
        apply_migrations(conn)
        assert apply_migrations(conn) == []
        assert applied_versions(conn) == {m.version for m in MIGRATIONS}

    def test_adopts_legacy_database(self, conn):
        """Columns added by older code do not break the ALTER migrations."""
        conn.execute("""
            CREATE TABLE scores (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id INTEGER,
                judge_name TEXT NOT NULL,
                mission_data TEXT NOT NULL,
                mechanical_design_score INTEGER DEFAULT 0
            )
        """)
        conn.execute(
            "INSERT INTO scores (team_id, judge_name, mission_data, mechanical_design_score) "
            "VALUES (1, 'Judge', '{}', 12)"
        )

        applied = apply_migrations(conn)

        assert applied == [m.version for m in MIGRATIONS]
        row = conn.execute("SELECT mechanical_design_score FROM scores").fetchone()
        assert row[0] == 12

    def test_existing_data_gets_column_default(self, conn):
        """Rows present before a column migration receive its default."""
        apply_migrations(conn, [m for m in MIGRATIONS if m.version == 1])
        conn.execute(
            "INSERT INTO teams (team_name, school_name, category) VALUES ('A', 'S', 'Primary')"
        )

        apply_migrations(conn)

        row = conn.execute("SELECT must_change_password FROM teams").fetchone()
        assert row[0] == 1

    def test_failing_migration_rolls_back(self, conn):
        """Failure raises MigrationError; earlier versions stay applied."""

        def broken(c):
            c.execute("CREATE TABLE half_done (id INTEGER)")
            c.execute("ALTER TABLE no_such_table ADD COLUMN x INTEGER")

        migrations = MIGRATIONS + [Migration(LATEST_VERSION + 1, "broken", broken)]

        with pytest.raises(MigrationError) as exc_info:
            apply_migrations(conn, migrations)

        assert exc_info.value.version == LATEST_VERSION + 1
        assert current_version(conn) == LATEST_VERSION
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert "half_done" not in tables
