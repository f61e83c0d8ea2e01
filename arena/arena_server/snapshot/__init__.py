"""
Snapshot module for Arena Server.

This module handles JSON snapshots of the competition tables:
- Export of all six tables into one timestamped document
- Transactional import that replaces the live dataset
- Retention of the newest snapshot files

Invariants:
    - Snapshot files are written atomically
    - Import is all-or-nothing
    - At most ``retention_count`` snapshot files are kept
"""

from .codec import SnapshotCodec, SnapshotFile
from .retention import RetentionPolicy, list_snapshot_files

__all__ = ["SnapshotCodec", "SnapshotFile", "RetentionPolicy", "list_snapshot_files"]
