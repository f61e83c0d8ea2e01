"""
Unit tests for EntityStore.

Tests cover:
- Row writes and listings for every table
- Table constraints (enums, ranges, cascade)
- Fail-fast writes during maintenance and while closed
"""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from arena.arena_server.errors import StorageBusyError, StorageUnavailableError
from arena.arena_server.guard import OperationGuard
from arena.arena_server.storage import EntityStore, StorageManager, UnknownTableError
from tests.helpers import populate


class TestEntityStore:
    """Tests for EntityStore."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def storage(self, data_dir):
        return StorageManager(data_dir / "database.sqlite", wal_mode=False)

    @pytest.fixture
    def guard(self):
        return OperationGuard()

    @pytest.fixture
    def entities(self, storage, guard):
        return EntityStore(storage, guard)

    @pytest.mark.asyncio
    async def test_populate_all_tables(self, storage, entities):
        await storage.open()
        ids = populate(entities)

        assert entities.count("teams") == 2
        assert entities.count("ticket_messages") == 2
        team = entities.get_row("teams", ids["team_a"])
        assert team["team_name"] == "Raptors"
        assert team["must_change_password"] == 1
        await storage.close()

    @pytest.mark.asyncio
    async def test_score_total_is_sum(self, storage, entities):
        await storage.open()
        team_id = entities.create_team("A", "S", "Primary")

        score_id = entities.create_score(team_id, "Judge", [1, 2, 3, 4, 5, 6, 7])

        row = entities.get_row("scores", score_id)
        assert row["total_score"] == 28
        assert row["mission7"] == 7
        await storage.close()

    @pytest.mark.asyncio
    async def test_listing_ordered_by_id(self, storage, entities):
        await storage.open()
        for i in range(3):
            entities.create_announcement(f"a{i}", "c")

        rows = entities.list_rows("announcements")

        assert [r["title"] for r in rows] == ["a0", "a1", "a2"]
        await storage.close()

    @pytest.mark.asyncio
    async def test_unknown_table(self, storage, entities):
        await storage.open()
        with pytest.raises(UnknownTableError):
            entities.list_rows("sqlite_master")
        await storage.close()

    @pytest.mark.asyncio
    async def test_category_enum(self, storage, entities):
        await storage.open()
        with pytest.raises(sqlite3.IntegrityError):
            entities.create_team("A", "S", "University")
        await storage.close()

    @pytest.mark.asyncio
    async def test_team_name_unique(self, storage, entities):
        await storage.open()
        entities.create_team("A", "S", "Primary")
        with pytest.raises(sqlite3.IntegrityError):
            entities.create_team("A", "Other", "Secondary")
        await storage.close()

    @pytest.mark.asyncio
    async def test_submission_requires_one_target(self, storage, entities):
        await storage.open()
        team_id = entities.create_team("A", "S", "Primary")

        with pytest.raises(ValueError):
            entities.create_submission(team_id, "link", file_path="x.pdf")
        with pytest.raises(ValueError):
            entities.create_submission(team_id, "file", file_path="x.pdf", external_link="y")

        entities.create_submission(team_id, "robot_run", file_path="run.mp4")
        await storage.close()

    @pytest.mark.asyncio
    async def test_ticket_status_free_transitions(self, storage, entities):
        await storage.open()
        ticket_id = entities.create_ticket("general", "low", "Question")

        assert entities.update_ticket_status(ticket_id, "Resolved")
        assert entities.update_ticket_status(ticket_id, "Open")
        with pytest.raises(ValueError):
            entities.update_ticket_status(ticket_id, "Closed")
        await storage.close()

    @pytest.mark.asyncio
    async def test_ticket_delete_cascades(self, storage, entities):
        await storage.open()
        ticket_id = entities.create_ticket("general", "low", "Question")
        entities.add_ticket_message(ticket_id, "user", "hi")

        assert entities.delete_ticket(ticket_id)

        assert entities.count("ticket_messages") == 0
        await storage.close()

    @pytest.mark.asyncio
    async def test_writes_rejected_during_maintenance(self, storage, guard, entities):
        await storage.open()

        with guard.hold("restore"):
            with pytest.raises(StorageBusyError):
                entities.create_team("A", "S", "Primary")

        entities.create_team("A", "S", "Primary")
        await storage.close()

    @pytest.mark.asyncio
    async def test_reads_fail_fast_when_closed(self, entities):
        with pytest.raises(StorageUnavailableError):
            entities.list_rows("teams")
