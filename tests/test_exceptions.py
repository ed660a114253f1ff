"""Tests for domain exception hierarchy."""

from __future__ import annotations

import unittest

from pairflow.exceptions import (
    ConfigValidationError,
    FlowChatError,
    ImageUploadFailed,
    InvalidToolTransition,
    MalformedFragment,
    NoRollbackTarget,
    NoWorkspaceModel,
    SnapshotRestoreFailed,
    UnknownSession,
    UnknownTool,
    UnknownTurn,
    UpstreamRejected,
)


class ExceptionHierarchyTests(unittest.TestCase):
    """Validate exception inheritance contract."""

    def test_exception_hierarchy(self) -> None:
        self.assertTrue(issubclass(FlowChatError, RuntimeError))
        for exc_type in (
            ConfigValidationError,
            ImageUploadFailed,
            InvalidToolTransition,
            MalformedFragment,
            NoRollbackTarget,
            NoWorkspaceModel,
            SnapshotRestoreFailed,
            UnknownSession,
            UnknownTool,
            UnknownTurn,
            UpstreamRejected,
        ):
            self.assertTrue(issubclass(exc_type, FlowChatError), exc_type.__name__)

    def test_errors_carry_their_context(self) -> None:
        turn = UnknownTurn("s1", "t9")
        self.assertEqual((turn.session_id, turn.turn_id), ("s1", "t9"))
        restore = SnapshotRestoreFailed("partial", "s1", 2, ["a.py"])
        self.assertEqual(restore.restored_files, ["a.py"])
        self.assertIsNone(UpstreamRejected("refused").prepared)


if __name__ == "__main__":
    unittest.main()
