"""
Archive module for Arena Server.

This module handles whole-system bundles (database file + uploads tree):
- ArchiveBuilder creates zip bundles from the live system
- ArchiveRestorer validates a bundle and swaps it in, keeping a failsafe
  copy of the previous database

Invariants:
    - Invalid archives never touch live state
    - The extraction workspace is always removed
"""

from .builder import ArchiveBuilder
from .restorer import ArchiveRestorer, RestoreResult, RestoreStage, compute_checksum

__all__ = [
    "ArchiveBuilder",
    "ArchiveRestorer",
    "RestoreResult",
    "RestoreStage",
    "compute_checksum",
]
