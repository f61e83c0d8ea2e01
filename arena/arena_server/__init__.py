"""
Arena Server - snapshot and restore for the competition platform.

The platform stores teams, submissions, judge scores, announcements and
support tickets in a single SQLite database, plus an uploads tree of
submitted files. This package keeps that state recoverable:

    ┌──────────────┐      ┌────────────────┐
    │  HTTP (API)  │─────▶│ BackupService  │
    └──────────────┘      └───────┬────────┘
                                  │  OperationGuard (one at a time)
              ┌───────────────────┼────────────────────┐
              ▼                   ▼                    ▼
      ┌──────────────┐   ┌────────────────┐   ┌────────────────┐
      │SnapshotCodec │   │ArchiveRestorer │   │ ArchiveBuilder │
      │ (JSON docs)  │   │ (zip → live)   │   │ (live → zip)   │
      └──────┬───────┘   └───────┬────────┘   └───────┬────────┘
             └───────────────────┼────────────────────┘
                                 ▼
                        ┌────────────────┐
                        │ StorageManager │  single SQLite handle
                        └────────────────┘

Invariants:
    - Only StorageManager holds the live database connection
    - Export, import, restore and archive build never overlap
    - A failed import or restore leaves a previously-valid state
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
