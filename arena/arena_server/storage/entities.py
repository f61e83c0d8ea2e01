"""
Entity access for the six competition tables.

EntityStore provides the read listings served to the admin UI and the row
writes the rest of the platform performs (team registration, submissions,
judge scores, announcements, support tickets). Row shapes are persisted
verbatim; scoring rules live elsewhere.

Invariants:
    - Writes fail fast with StorageBusyError while a maintenance
      operation (export/import/restore) holds the guard
    - Writes fail fast with StorageUnavailableError while the connection
      is closed
    - Table names are validated against ENTITY_TABLES before use in SQL
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from ..guard import OperationGuard
from .lifecycle import StorageManager

logger = logging.getLogger(__name__)

# Snapshot document order
ENTITY_TABLES: tuple[str, ...] = (
    "teams",
    "submissions",
    "scores",
    "announcements",
    "tickets",
    "ticket_messages",
)

# Children before parents so foreign keys hold while emptying
DELETE_ORDER: tuple[str, ...] = (
    "ticket_messages",
    "scores",
    "submissions",
    "tickets",
    "teams",
    "announcements",
)

# Parents before children so foreign keys hold while re-inserting
INSERT_ORDER: tuple[str, ...] = (
    "teams",
    "announcements",
    "submissions",
    "scores",
    "tickets",
    "ticket_messages",
)

TICKET_STATUSES = ("Open", "Pending", "Resolved")


class UnknownTableError(ValueError):
    """Requested table is not one of the six entity tables."""

    pass


def check_table(table: str) -> str:
    if table not in ENTITY_TABLES:
        raise UnknownTableError(f"Unknown table: {table}")
    return table


def table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    """Column names of ``table`` in declaration order."""
    check_table(table)
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]


def fetch_all(conn: sqlite3.Connection, table: str) -> list[dict[str, Any]]:
    """All rows of ``table`` ordered by primary key."""
    check_table(table)
    cursor = conn.execute(f"SELECT * FROM {table} ORDER BY id")
    return [dict(row) for row in cursor.fetchall()]


class EntityStore:
    """Read listings and row writes for the competition tables.

    Example:
        >>> store = EntityStore(storage, guard)
        >>> team_id = store.create_team("Raptors", "Hill School", "Primary")
        >>> store.list_rows("teams")
    """

    def __init__(self, storage: StorageManager, guard: OperationGuard) -> None:
        self.storage = storage
        self.guard = guard

    def list_rows(self, table: str) -> list[dict[str, Any]]:
        with self.storage.locked() as conn:
            return fetch_all(conn, table)

    def get_row(self, table: str, row_id: int) -> dict[str, Any] | None:
        check_table(table)
        with self.storage.locked() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
            return dict(row) if row else None

    def count(self, table: str) -> int:
        check_table(table)
        with self.storage.locked() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def _insert(self, table: str, values: dict[str, Any]) -> int:
        self.guard.ensure_idle()
        check_table(table)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self.storage.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            row_id = cursor.lastrowid

        logger.debug("Inserted row", extra={"table": table, "row_id": row_id})
        return row_id

    def create_team(
        self,
        team_name: str,
        school_name: str,
        category: str,
        login_password: str | None = None,
    ) -> int:
        return self._insert(
            "teams",
            {
                "team_name": team_name,
                "school_name": school_name,
                "category": category,
                "login_password": login_password,
            },
        )

    def create_submission(
        self,
        team_id: int,
        submission_type: str,
        file_path: str | None = None,
        external_link: str | None = None,
        original_filename: str | None = None,
    ) -> int:
        """Record a submission; exactly one of file_path/external_link per type."""
        if submission_type == "link":
            if not external_link or file_path:
                raise ValueError("link submissions require external_link only")
        elif not file_path or external_link:
            raise ValueError(f"{submission_type} submissions require file_path only")

        return self._insert(
            "submissions",
            {
                "team_id": team_id,
                "submission_type": submission_type,
                "file_path": file_path,
                "external_link": external_link,
                "original_filename": original_filename,
            },
        )

    def create_score(
        self,
        team_id: int,
        judge_name: str,
        missions: list[int],
        mission_data: dict[str, Any] | None = None,
        completion_time_seconds: int | None = None,
        mechanical_design_score: int = 0,
        judge_notes: str | None = None,
    ) -> int:
        """Store a judge's score sheet.

        Args:
            missions: The seven mission sub-scores; total_score is their sum
        """
        if len(missions) != 7:
            raise ValueError("exactly seven mission scores are required")
        values: dict[str, Any] = {
            "team_id": team_id,
            "judge_name": judge_name,
            "mission_data": json.dumps(mission_data or {}),
        }
        for i, points in enumerate(missions, start=1):
            values[f"mission{i}"] = points
        values.update(
            total_score=sum(missions),
            completion_time_seconds=completion_time_seconds,
            mechanical_design_score=mechanical_design_score,
            judge_notes=judge_notes,
        )
        return self._insert("scores", values)

    def create_announcement(
        self,
        title: str,
        content: str,
        priority: str = "medium",
        is_pinned: bool = False,
        expires_at: str | None = None,
    ) -> int:
        return self._insert(
            "announcements",
            {
                "title": title,
                "content": content,
                "priority": priority,
                "is_pinned": int(is_pinned),
                "expires_at": expires_at,
            },
        )

    def create_ticket(
        self,
        category: str,
        urgency: str,
        description: str,
        team_id: int | None = None,
        name: str | None = None,
        email: str | None = None,
        file_path: str | None = None,
    ) -> int:
        return self._insert(
            "tickets",
            {
                "team_id": team_id,
                "name": name,
                "email": email,
                "category": category,
                "urgency": urgency,
                "description": description,
                "file_path": file_path,
            },
        )

    def add_ticket_message(self, ticket_id: int, sender_role: str, message: str) -> int:
        return self._insert(
            "ticket_messages",
            {"ticket_id": ticket_id, "sender_role": sender_role, "message": message},
        )

    def update_ticket_status(self, ticket_id: int, status: str) -> bool:
        """Set a ticket's status. Any transition between known statuses is allowed."""
        if status not in TICKET_STATUSES:
            raise ValueError(f"Invalid ticket status: {status}")
        self.guard.ensure_idle()
        with self.storage.transaction() as conn:
            cursor = conn.execute("UPDATE tickets SET status = ? WHERE id = ?", (status, ticket_id))
            return cursor.rowcount > 0

    def delete_ticket(self, ticket_id: int) -> bool:
        """Delete a ticket; its messages go with it (ON DELETE CASCADE)."""
        self.guard.ensure_idle()
        with self.storage.transaction() as conn:
            cursor = conn.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,))
            return cursor.rowcount > 0
