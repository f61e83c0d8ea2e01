"""
Unit tests for the maintenance OperationGuard.
"""

import pytest

from arena.arena_server.errors import ConcurrencyError, StorageBusyError
from arena.arena_server.guard import OperationGuard


class TestOperationGuard:
    """Tests for OperationGuard."""

    def test_hold_and_release(self):
        guard = OperationGuard()

        with guard.hold("export"):
            assert guard.busy
            assert guard.active == "export"

        assert not guard.busy
        assert guard.active is None

    def test_second_operation_rejected(self):
        """Nested acquisition fails immediately and leaves the holder intact."""
        guard = OperationGuard()

        with guard.hold("restore"):
            with pytest.raises(ConcurrencyError) as exc_info:
                with guard.hold("import"):
                    pass
            assert exc_info.value.requested == "import"
            assert exc_info.value.active == "restore"
            assert guard.active == "restore"

        assert not guard.busy

    def test_released_on_error(self):
        guard = OperationGuard()

        with pytest.raises(ValueError):
            with guard.hold("import"):
                raise ValueError("fail")

        assert not guard.busy
        with guard.hold("export"):
            pass

    def test_ensure_idle(self):
        """Writes are rejected with a retryable error during maintenance."""
        guard = OperationGuard()
        guard.ensure_idle()

        with guard.hold("restore"):
            with pytest.raises(StorageBusyError) as exc_info:
                guard.ensure_idle()
            assert exc_info.value.retryable
