"""Retention window for JSON snapshot files."""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

SNAPSHOT_PATTERN = re.compile(r"^backup-(\d+)\.json$")


def snapshot_epoch(path: Path) -> int:
    """Epoch-ms encoded in a snapshot file name (0 if it has none)."""
    match = SNAPSHOT_PATTERN.match(path.name)
    return int(match.group(1)) if match else 0


def list_snapshot_files(backups_dir: Path) -> list[Path]:
    """Snapshot files, newest first (mtime, then name epoch)."""
    if not backups_dir.exists():
        return []

    files = [p for p in backups_dir.iterdir() if p.is_file() and SNAPSHOT_PATTERN.match(p.name)]
    return sorted(files, key=lambda p: (p.stat().st_mtime, snapshot_epoch(p)), reverse=True)


class RetentionPolicy:
    """Keep only the newest ``keep`` snapshot files.

    Pure with respect to the database and safe to call redundantly.
    """

    def __init__(self, backups_dir: str | Path, keep: int = 50) -> None:
        if keep < 1:
            raise ValueError("retention must keep at least one snapshot")
        self.backups_dir = Path(backups_dir)
        self.keep = keep

    def prune(self, protect: Path | None = None) -> list[Path]:
        """Delete every snapshot beyond the newest ``keep``.

        Args:
            protect: File that must survive (the one just written)

        Returns:
            Paths that were deleted
        """
        files = list_snapshot_files(self.backups_dir)
        keep = self.keep
        if protect is not None and Path(protect) in files:
            files.remove(Path(protect))
            # The protected file occupies one slot of the window
            keep -= 1

        deleted = []
        for path in files[keep:]:
            try:
                path.unlink()
                deleted.append(path)
            except FileNotFoundError:
                continue

        if deleted:
            logger.info(
                "Pruned old snapshots",
                extra={"deleted": len(deleted), "kept": self.keep},
            )
        return deleted
