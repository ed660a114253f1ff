"""Tests for the tool confirmation gate."""

from __future__ import annotations

from typing import Any
import unittest

from pairflow.confirmation import ToolConfirmationGate
from pairflow.events.inbound import (
    RoundEnded,
    RoundStarted,
    StreamFragment,
    ToolStarted,
    TurnEnded,
    TurnStarted,
)
from pairflow.exceptions import InvalidToolTransition, UnknownTool
from pairflow.models import ItemStatus, RoundStatus, ToolItem, TurnStatus, UserMessage
from pairflow.session_manager import SessionManager


class FakeExecutor:
    """Records downstream resume/skip calls."""

    def __init__(self) -> None:
        self.confirmed: list[tuple[str, str, dict[str, Any]]] = []
        self.rejected: list[tuple[str, str]] = []

    async def confirm_tool(self, session_id: str, tool_id: str, tool_input: dict[str, Any]) -> None:
        self.confirmed.append((session_id, tool_id, tool_input))

    async def reject_tool(self, session_id: str, tool_id: str) -> None:
        self.rejected.append((session_id, tool_id))


class FailingExecutor:
    """Executor whose downstream connection is gone."""

    async def confirm_tool(self, session_id: str, tool_id: str, tool_input: dict[str, Any]) -> None:
        raise ConnectionError("executor offline")

    async def reject_tool(self, session_id: str, tool_id: str) -> None:
        raise ConnectionError("executor offline")


def tool_call(tool_id: str, payload: dict[str, Any]) -> StreamFragment:
    return StreamFragment(
        session_id="s1",
        turn_id="t1",
        round_id="r1",
        kind="tool_call",
        payload={"id": tool_id, "tool": "Edit", **payload},
    )


def tool_result(tool_id: str, **payload: Any) -> StreamFragment:
    return StreamFragment(
        session_id="s1",
        turn_id="t1",
        round_id="r1",
        kind="tool_result",
        payload={"id": tool_id, **payload},
    )


class ToolConfirmationGateTests(unittest.IsolatedAsyncioTestCase):
    """Validate confirm/reject transitions and their effect on rounds."""

    def setUp(self) -> None:
        self.manager = SessionManager()
        self.manager.create_session("s1")
        self.executor = FakeExecutor()
        self.gate = ToolConfirmationGate(self.manager, self.executor)
        self.manager.apply_events(
            [
                TurnStarted(
                    session_id="s1",
                    turn_id="t1",
                    user_message=UserMessage(id="u1", content="edit a.py"),
                ),
                RoundStarted(session_id="s1", turn_id="t1", round_id="r1"),
            ]
        )

    def _stream_tool(self, tool_id: str, path: str) -> None:
        self.manager.apply_events(
            [
                tool_call(tool_id, {"delta": '{"path": '}),
                tool_call(
                    tool_id,
                    {"delta": f'"{path}"}}', "done": True, "requires_confirmation": True},
                ),
            ]
        )

    def _round_status(self) -> RoundStatus:
        turn = self.manager.get_turn("s1", "t1")
        assert turn is not None
        return turn.model_rounds[0].status

    async def test_confirm_with_edited_input_runs_to_completion(self) -> None:
        self._stream_tool("tool-1", "a.py")
        self.manager.apply_events(
            [
                RoundEnded(session_id="s1", turn_id="t1", round_id="r1"),
                TurnEnded(session_id="s1", turn_id="t1"),
            ]
        )
        self.assertEqual(self._round_status(), RoundStatus.PENDING_CONFIRMATION)
        self.assertEqual([t.id for t in self.gate.pending("s1")], ["tool-1"])

        item = await self.gate.confirm("tool-1", {"path": "b.py"})
        assert item is not None
        self.assertEqual(item.status, ItemStatus.CONFIRMED)
        self.assertEqual(item.tool_call.input, {"path": "b.py"})
        self.assertTrue(item.user_confirmed)
        self.assertEqual(self.executor.confirmed, [("s1", "tool-1", {"path": "b.py"})])
        self.assertEqual(self.gate.decision("tool-1"), ItemStatus.CONFIRMED)

        self.manager.apply_events(
            [
                ToolStarted(session_id="s1", turn_id="t1", tool_id="tool-1"),
                tool_result("tool-1", result="patched", success=True),
            ]
        )
        turn = self.manager.get_turn("s1", "t1")
        assert turn is not None
        tool = turn.model_rounds[0].items[0]
        self.assertEqual(tool.status, ItemStatus.COMPLETED)
        self.assertEqual(turn.model_rounds[0].status, RoundStatus.COMPLETED)
        self.assertEqual(turn.status, TurnStatus.COMPLETED)

    async def test_confirm_without_edit_keeps_model_input(self) -> None:
        self._stream_tool("tool-1", "a.py")
        await self.gate.confirm("tool-1")
        self.assertEqual(self.executor.confirmed, [("s1", "tool-1", {"path": "a.py"})])

    async def test_reject_does_not_affect_sibling_tool(self) -> None:
        self._stream_tool("tool-1", "a.py")
        self._stream_tool("tool-2", "b.py")

        rejected = await self.gate.reject("tool-1")
        assert rejected is not None
        self.assertEqual(rejected.status, ItemStatus.REJECTED)
        self.assertIsNone(rejected.tool_result)
        self.assertFalse(rejected.user_confirmed)

        sibling = self.manager.get_tool("tool-2")
        assert sibling is not None
        self.assertEqual(sibling.status, ItemStatus.PENDING_CONFIRMATION)
        self.assertEqual(self._round_status(), RoundStatus.PENDING_CONFIRMATION)
        self.assertEqual(self.executor.rejected, [("s1", "tool-1")])

    async def test_rejected_tool_is_terminal(self) -> None:
        self._stream_tool("tool-1", "a.py")
        await self.gate.reject("tool-1")
        with self.assertRaises(InvalidToolTransition):
            await self.gate.confirm("tool-1")
        self.manager.apply_event(tool_result("tool-1", result="late"))
        tool = self.manager.get_tool("tool-1")
        assert tool is not None
        self.assertEqual(tool.status, ItemStatus.REJECTED)
        self.assertIsNone(tool.tool_result)

    async def test_double_confirm_is_rejected(self) -> None:
        self._stream_tool("tool-1", "a.py")
        await self.gate.confirm("tool-1")
        with self.assertRaises(InvalidToolTransition):
            await self.gate.confirm("tool-1")
        self.assertEqual(len(self.executor.confirmed), 1)

    async def test_unknown_tool(self) -> None:
        with self.assertRaises(UnknownTool):
            await self.gate.confirm("missing")

    async def test_tool_not_awaiting_confirmation(self) -> None:
        self.manager.apply_event(tool_call("tool-1", {"delta": "{}", "done": True}))
        with self.assertRaises(InvalidToolTransition):
            await self.gate.reject("tool-1")

    async def test_executor_failure_on_confirm_settles_round(self) -> None:
        gate = ToolConfirmationGate(self.manager, FailingExecutor())
        self._stream_tool("tool-1", "a.py")
        self.manager.apply_events(
            [
                RoundEnded(session_id="s1", turn_id="t1", round_id="r1"),
                TurnEnded(session_id="s1", turn_id="t1"),
            ]
        )
        with self.assertLogs("pairflow.confirmation", level="ERROR") as logs:
            with self.assertRaises(ConnectionError):
                await gate.confirm("tool-1")
        self.assertTrue(any("tool.executor_failed" in line for line in logs.output))

        turn = self.manager.get_turn("s1", "t1")
        assert turn is not None
        tool = turn.model_rounds[0].items[0]
        assert isinstance(tool, ToolItem)
        self.assertEqual(tool.status, ItemStatus.ERROR)
        assert tool.tool_result is not None
        self.assertFalse(tool.tool_result.success)
        self.assertIn("executor offline", tool.tool_result.error or "")
        self.assertEqual(turn.model_rounds[0].status, RoundStatus.COMPLETED)
        self.assertEqual(turn.status, TurnStatus.COMPLETED)
        with self.assertRaises(InvalidToolTransition):
            await gate.confirm("tool-1")

    async def test_executor_failure_on_reject_keeps_tool_rejected(self) -> None:
        gate = ToolConfirmationGate(self.manager, FailingExecutor())
        self._stream_tool("tool-1", "a.py")
        self.manager.apply_event(RoundEnded(session_id="s1", turn_id="t1", round_id="r1"))
        with self.assertLogs("pairflow.confirmation", level="ERROR"):
            with self.assertRaises(ConnectionError):
                await gate.reject("tool-1")
        tool = self.manager.get_tool("tool-1")
        assert tool is not None
        self.assertEqual(tool.status, ItemStatus.REJECTED)
        self.assertEqual(self._round_status(), RoundStatus.COMPLETED)

    async def test_decision_is_forgotten_with_its_session(self) -> None:
        self._stream_tool("tool-1", "a.py")
        await self.gate.reject("tool-1")
        self.assertEqual(self.gate.decision("tool-1"), ItemStatus.REJECTED)
        self.manager.delete_session("s1")
        self.assertIsNone(self.gate.decision("tool-1"))

    async def test_updated_input_must_be_a_dict(self) -> None:
        self._stream_tool("tool-1", "a.py")
        with self.assertRaises(TypeError):
            await self.gate.confirm("tool-1", ["not", "a", "dict"])  # type: ignore[arg-type]
        tool = self.manager.get_tool("tool-1")
        assert tool is not None
        self.assertEqual(tool.status, ItemStatus.PENDING_CONFIRMATION)


if __name__ == "__main__":
    unittest.main()
