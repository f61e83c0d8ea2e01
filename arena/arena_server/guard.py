"""
Advisory lock serializing maintenance operations.

Export, import, restore and archive build each take the guard for their
whole duration. The guard never waits: a second operation attempted while
one is in flight is rejected with ConcurrencyError, leaving the running
operation untouched. Ordinary writes consult ``ensure_idle`` and fail fast
with StorageBusyError instead of racing a restore.

Invariants:
    - At most one maintenance operation holds the guard
    - Acquisition never blocks
    - The guard is always released, including on error
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .errors import ConcurrencyError, StorageBusyError

logger = logging.getLogger(__name__)


class OperationGuard:
    """Single-slot, non-blocking lock for export/import/restore.

    Example:
        >>> guard = OperationGuard()
        >>> with guard.hold("export"):
        ...     pass
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: str | None = None

    @property
    def active(self) -> str | None:
        """Name of the operation currently holding the guard."""
        return self._active

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, operation: str) -> Iterator[None]:
        """Hold the guard for ``operation``.

        Raises:
            ConcurrencyError: If another operation already holds it
        """
        if not self._lock.acquire(blocking=False):
            logger.warning(
                "Rejected concurrent maintenance operation",
                extra={"requested": operation, "active": self._active},
            )
            raise ConcurrencyError(operation, self._active)

        self._active = operation
        try:
            yield
        finally:
            self._active = None
            self._lock.release()

    def ensure_idle(self) -> None:
        """Raise StorageBusyError if a maintenance operation is running."""
        if self._lock.locked():
            raise StorageBusyError(self._active)
