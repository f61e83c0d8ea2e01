"""
Shared helpers for Arena Server tests.

Builds populated databases and archive bundles without going through the
code under test where possible.
"""

import hashlib
import json
import sqlite3
import zipfile
from pathlib import Path
from typing import Any

from arena.arena_server.storage.entities import ENTITY_TABLES, EntityStore, fetch_all


def populate(entities: EntityStore, prefix: str = "") -> dict[str, int]:
    """Insert at least one row into every table.

    Returns:
        Row ids keyed by a short label
    """
    ids = {}
    ids["team_a"] = entities.create_team(f"{prefix}Raptors", "Hill School", "Primary", "pw1")
    ids["team_b"] = entities.create_team(f"{prefix}Titans", "Lake College", "Secondary")
    ids["sub_file"] = entities.create_submission(
        ids["team_a"], "file", file_path="poster.pdf", original_filename="Poster.pdf"
    )
    ids["sub_link"] = entities.create_submission(
        ids["team_b"], "link", external_link="https://example.com/video"
    )
    ids["score"] = entities.create_score(
        ids["team_a"],
        "Judge Dee",
        [10, 20, 30, 5, 0, 15, 10],
        mission_data={"mission7": {"plate_pressed": True}},
        completion_time_seconds=118,
        mechanical_design_score=40,
        judge_notes="clean run",
    )
    ids["announcement"] = entities.create_announcement(
        "Welcome", "Check-in opens at 8am", priority="high", is_pinned=True
    )
    ids["ticket"] = entities.create_ticket(
        "technical", "high", "Robot will not boot", team_id=ids["team_b"], name="Sam"
    )
    ids["message"] = entities.add_ticket_message(ids["ticket"], "user", "Still broken")
    ids["reply"] = entities.add_ticket_message(ids["ticket"], "admin", "On our way")
    return ids


def dump_tables(conn: sqlite3.Connection) -> dict[str, list[dict[str, Any]]]:
    """All rows of all six tables."""
    return {table: fetch_all(conn, table) for table in ENTITY_TABLES}


def file_hash(path: Path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


def make_archive(
    archive_path: Path,
    database: Path | bytes | None = None,
    uploads: dict[str, bytes] | None = None,
    manifest: dict[str, Any] | None = None,
    extra: dict[str, bytes] | None = None,
) -> Path:
    """Write a zip bundle.

    Args:
        database: Database file to store as database.sqlite (path or raw bytes)
        uploads: Relative path -> content, stored under uploads/
        manifest: Stored as manifest.json when given
        extra: Arbitrary member name -> content
    """
    with zipfile.ZipFile(archive_path, "w") as zf:
        if isinstance(database, Path):
            zf.write(database, "database.sqlite")
        elif database is not None:
            zf.writestr("database.sqlite", database)
        if uploads is not None:
            zf.writestr("uploads/", "")
            for name, content in uploads.items():
                zf.writestr(f"uploads/{name}", content)
        if manifest is not None:
            zf.writestr("manifest.json", json.dumps(manifest))
        for name, content in (extra or {}).items():
            zf.writestr(name, content)
    return archive_path
