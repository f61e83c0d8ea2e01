"""
Unit tests for SnapshotCodec.

Tests cover:
- Export document shape and file naming
- Export/import round trip with preserved primary keys
- All-or-nothing import
- Retention after export
- Fail-fast behavior under the maintenance guard
- Export running in the default executor
"""

import asyncio
import json
import re
import tempfile
import threading
from pathlib import Path

import pytest

from arena.arena_server.errors import (
    ConcurrencyError,
    SnapshotFormatError,
    SnapshotTransactionError,
    StorageUnavailableError,
)
from arena.arena_server.guard import OperationGuard
from arena.arena_server.snapshot import RetentionPolicy, SnapshotCodec, list_snapshot_files
from arena.arena_server.storage import EntityStore, StorageManager
from arena.arena_server.storage.entities import ENTITY_TABLES
from tests.helpers import dump_tables, populate


class TestSnapshotCodec:
    """Tests for SnapshotCodec."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    async def storage(self, data_dir):
        storage = StorageManager(data_dir / "database.sqlite", wal_mode=False)
        await storage.open()
        yield storage
        await storage.close()

    @pytest.fixture
    def guard(self):
        return OperationGuard()

    @pytest.fixture
    def entities(self, storage, guard):
        return EntityStore(storage, guard)

    @pytest.fixture
    def codec(self, storage, guard, data_dir):
        return SnapshotCodec(storage, guard, data_dir / "backups")

    @pytest.mark.asyncio
    async def test_export_document(self, codec, entities):
        """Export writes backup-<ms>.json with a timestamp and all six arrays."""
        populate(entities)

        path = await codec.export()

        assert re.fullmatch(r"backup-\d+\.json", path.name)
        document = json.loads(path.read_text())
        assert "timestamp" in document
        for table in ENTITY_TABLES:
            assert isinstance(document[table], list)
        assert len(document["teams"]) == 2
        assert document["scores"][0]["total_score"] == 90

    @pytest.mark.asyncio
    async def test_export_empty_database(self, codec):
        path = await codec.export()

        document = json.loads(path.read_text())
        assert all(document[table] == [] for table in ENTITY_TABLES)

    @pytest.mark.asyncio
    async def test_round_trip(self, storage, codec, entities):
        """Export, mutate, import: the exported state comes back with the same ids."""
        populate(entities)
        before = dump_tables(storage.connection())
        path = await codec.export()

        entities.create_team("Intruders", "Nowhere", "Secondary")
        entities.delete_ticket(before["tickets"][0]["id"])

        inserted = await codec.import_file(path)

        assert dump_tables(storage.connection()) == before
        assert inserted["teams"] == 2
        assert inserted["ticket_messages"] == 2

    @pytest.mark.asyncio
    async def test_import_is_atomic(self, storage, codec, entities):
        """A bad row in the last table leaves the live dataset unchanged."""
        populate(entities)
        before = dump_tables(storage.connection())

        document = json.loads((await codec.export()).read_text())
        document["teams"].append(
            {"id": 99, "team_name": "New", "school_name": "S", "category": "Primary"}
        )
        document["ticket_messages"][-1]["sender_role"] = "robot"

        with pytest.raises(SnapshotTransactionError):
            await codec.import_snapshot(document)

        assert dump_tables(storage.connection()) == before
        assert not storage.connection().in_transaction

    @pytest.mark.asyncio
    async def test_import_missing_array_empties_table(self, storage, codec, entities):
        populate(entities)
        document = json.loads((await codec.export()).read_text())
        del document["announcements"]

        inserted = await codec.import_snapshot(document)

        assert inserted["announcements"] == 0
        assert entities.count("announcements") == 0
        assert entities.count("teams") == 2

    @pytest.mark.asyncio
    async def test_import_ignores_unknown_columns(self, codec, entities):
        document = {
            "teams": [
                {
                    "id": 5,
                    "team_name": "Legacy",
                    "school_name": "Old School",
                    "category": "Primary",
                    "retired_field": "x",
                }
            ]
        }

        await codec.import_snapshot(document)

        team = entities.get_row("teams", 5)
        assert team["team_name"] == "Legacy"
        assert team["must_change_password"] == 1

    @pytest.mark.asyncio
    async def test_import_rejects_malformed_documents(self, storage, codec, entities):
        populate(entities)
        before = dump_tables(storage.connection())

        with pytest.raises(SnapshotFormatError):
            await codec.import_snapshot([])
        with pytest.raises(SnapshotFormatError):
            await codec.import_snapshot({"teams": {"id": 1}})
        with pytest.raises(SnapshotFormatError):
            await codec.import_snapshot({"teams": ["not a row"]})

        assert dump_tables(storage.connection()) == before

    @pytest.mark.asyncio
    async def test_load_invalid_json(self, codec, data_dir):
        path = data_dir / "backup-1.json"
        path.write_text("{not json")

        with pytest.raises(SnapshotFormatError):
            codec.load(path)

    @pytest.mark.asyncio
    async def test_retention_after_export(self, codec):
        """Only the newest 50 snapshots survive repeated exports."""
        paths = [await codec.export() for _ in range(53)]

        remaining = list_snapshot_files(codec.backups_dir)

        assert len(remaining) == 50
        assert sorted(remaining) == sorted(paths[-50:])

    @pytest.mark.asyncio
    async def test_custom_retention(self, storage, guard, data_dir):
        codec = SnapshotCodec(
            storage, guard, data_dir / "backups", RetentionPolicy(data_dir / "backups", keep=2)
        )

        paths = [await codec.export() for _ in range(4)]

        assert sorted(list_snapshot_files(codec.backups_dir)) == sorted(paths[-2:])

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, codec):
        await codec.export()
        await codec.export()

        leftovers = [p for p in codec.backups_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    @pytest.mark.asyncio
    async def test_export_rejected_while_guard_held(self, codec, guard):
        with guard.hold("restore"):
            with pytest.raises(ConcurrencyError):
                await codec.export()
            with pytest.raises(ConcurrencyError):
                await codec.import_snapshot({})

        assert not codec.backups_dir.exists() or list_snapshot_files(codec.backups_dir) == []

    @pytest.mark.asyncio
    async def test_export_fails_fast_when_closed(self, storage, codec):
        await storage.close()

        with pytest.raises(StorageUnavailableError):
            await codec.export()

        await storage.open()

    @pytest.mark.asyncio
    async def test_export_runs_off_event_loop(self, codec, entities):
        """Table reads and the file write do not stall other tasks on the loop."""
        populate(entities)
        loop_ran = threading.Event()
        original = codec.dump

        def dump_after_loop_runs():
            assert loop_ran.wait(timeout=5)
            return original()

        codec.dump = dump_after_loop_runs

        async def other_task():
            await asyncio.sleep(0.01)
            loop_ran.set()

        path, _ = await asyncio.gather(codec.export(), other_task())

        assert len(json.loads(path.read_text())["teams"]) == 2

    @pytest.mark.asyncio
    async def test_list_snapshots(self, codec):
        first = await codec.export()
        second = await codec.export()

        listed = codec.list_snapshots()

        assert [s.name for s in listed] == [second.name, first.name]
        assert listed[0].size == second.stat().st_size
        assert set(listed[0].to_dict()) == {"name", "size", "created"}

    @pytest.mark.asyncio
    async def test_snapshot_path_refuses_traversal(self, codec, data_dir):
        path = await codec.export()
        (data_dir / "database.json").write_text("{}")

        assert codec.snapshot_path(path.name) == path.resolve()
        assert codec.snapshot_path("../database.json") is None
        assert codec.snapshot_path("backup-0.json") is None
