"""Tests for the FlowChatCore composition root."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any
import unittest

from pairflow.config import DEFAULT_CONFIG
from pairflow.core import FlowChatCore
from pairflow.events.inbound import (
    InboundEvent,
    RoundCancelled,
    RoundEnded,
    RoundStarted,
    StreamFragment,
    TurnEnded,
)
from pairflow.exceptions import UpstreamRejected
from pairflow.models import ImageContext, QueueStatus, SessionConfig, TurnSnapshot, TurnStatus


class FakeBootstrap:
    async def create_session(self, config: SessionConfig) -> str:
        return "s1"

    async def resolve_default_model(self) -> str | None:
        return "coder-large"


class FakeUploader:
    async def upload_image_contexts(self, items: Sequence[ImageContext]) -> None:
        return None


class FakeUpstream:
    def __init__(self) -> None:
        self.failures = 0
        self.sent: list[str] = []

    async def send_message(self, session_id: str, turn_id: str, body: str, agent_type: str) -> None:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("offline")
        self.sent.append(turn_id)


class FakeSnapshotStore:
    def __init__(self) -> None:
        self.created: list[tuple[str, int]] = []

    async def create_snapshot(self, session_id: str, turn_index: int) -> None:
        self.created.append((session_id, turn_index))

    async def restore_to_turn(self, session_id: str, turn_index: int) -> list[str]:
        return ["a.py"]

    async def list_snapshots(self, session_id: str) -> list[TurnSnapshot]:
        return [TurnSnapshot(session_id=s, turn_index=i) for s, i in self.created if s == session_id]


class FakeExecutor:
    def __init__(self) -> None:
        self.confirmed: list[str] = []

    async def confirm_tool(self, session_id: str, tool_id: str, tool_input: dict[str, Any]) -> None:
        self.confirmed.append(tool_id)

    async def reject_tool(self, session_id: str, tool_id: str) -> None:
        return None


class FakeAgentController:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.cancelled: list[tuple[str, str]] = []

    async def cancel_turn(self, session_id: str, turn_id: str) -> None:
        if self.fail:
            raise RuntimeError("agent unreachable")
        self.cancelled.append((session_id, turn_id))


class FlowChatCoreTests(unittest.IsolatedAsyncioTestCase):
    """Validate end-to-end wiring through the core."""

    async def asyncSetUp(self) -> None:
        self.upstream = FakeUpstream()
        self.store = FakeSnapshotStore()
        self.executor = FakeExecutor()
        self.controller = FakeAgentController()
        self.core = FlowChatCore(
            bootstrap=FakeBootstrap(),
            uploader=FakeUploader(),
            upstream=self.upstream,
            snapshot_store=self.store,
            tool_executor=self.executor,
            agent_controller=self.controller,
        )

    async def asyncTearDown(self) -> None:
        await self.core.shutdown()

    def _round(self, turn_id: str) -> list[InboundEvent]:
        return [
            RoundStarted(session_id="s1", turn_id=turn_id, round_id="r1"),
            StreamFragment(
                session_id="s1",
                turn_id=turn_id,
                round_id="r1",
                kind="text",
                payload={"text": "Hello"},
            ),
        ]

    async def test_send_consume_and_snapshot(self) -> None:
        prepared = await self.core.send_message("hi")
        applied = self.core.consume(
            self._round(prepared.turn_id)
            + [
                RoundEnded(session_id="s1", turn_id=prepared.turn_id, round_id="r1"),
                TurnEnded(session_id="s1", turn_id=prepared.turn_id),
            ]
        )
        await self.core.settle()

        self.assertEqual(applied, 4)
        turn = self.core.sessions.get_turn("s1", prepared.turn_id)
        assert turn is not None
        self.assertEqual(turn.status, TurnStatus.COMPLETED)
        self.assertEqual(self.store.created, [("s1", 0)])
        self.assertEqual(len(await self.core.list_snapshots("s1")), 1)

    async def test_consume_stream_drops_unroutable_events(self) -> None:
        prepared = await self.core.send_message("hi")

        async def source() -> AsyncIterator[InboundEvent]:
            for event in self._round(prepared.turn_id):
                yield event
            yield TurnEnded(session_id="ghost", turn_id="t0")

        with self.assertLogs("pairflow.session_manager", level="WARNING"):
            applied = await self.core.consume_stream(source())
        self.assertEqual(applied, 2)

    async def test_rejected_send_is_queued(self) -> None:
        self.upstream.failures = 1
        with self.assertRaises(UpstreamRejected):
            await self.core.send_message("hi")
        queued = self.core.retry_queue.messages(QueueStatus.QUEUED)
        self.assertEqual(len(queued), 1)

        result = await self.core.retry_queue.retry(queued[0].id)
        self.assertEqual(result.status, QueueStatus.COMPLETED)
        self.assertEqual(self.core.sessions.turn_count("s1"), 1)

    async def test_cancel_turn_notifies_agent(self) -> None:
        prepared = await self.core.send_message("hi")
        self.core.consume(self._round(prepared.turn_id))

        self.assertTrue(await self.core.cancel_turn("s1", prepared.turn_id))
        self.assertEqual(self.controller.cancelled, [("s1", prepared.turn_id)])
        turn = self.core.sessions.get_turn("s1", prepared.turn_id)
        assert turn is not None
        self.assertEqual(turn.status, TurnStatus.CANCELLING)

        self.core.consume([RoundCancelled(session_id="s1", turn_id=prepared.turn_id, round_id="r1")])
        turn = self.core.sessions.get_turn("s1", prepared.turn_id)
        assert turn is not None
        self.assertEqual(turn.status, TurnStatus.CANCELLED)

    async def test_cancel_failure_finishes_locally(self) -> None:
        self.controller.fail = True
        prepared = await self.core.send_message("hi")
        self.core.consume(self._round(prepared.turn_id))

        with self.assertLogs("pairflow.core", level="ERROR"):
            with self.assertRaises(RuntimeError):
                await self.core.cancel_turn("s1", prepared.turn_id)
        turn = self.core.sessions.get_turn("s1", prepared.turn_id)
        assert turn is not None
        self.assertEqual(turn.status, TurnStatus.CANCELLED)

    async def test_confirm_tool_through_core(self) -> None:
        prepared = await self.core.send_message("edit")
        self.core.consume(
            [
                StreamFragment(
                    session_id="s1",
                    turn_id=prepared.turn_id,
                    round_id="r1",
                    kind="tool_call",
                    payload={
                        "id": "tool-1",
                        "tool": "Edit",
                        "input": {"path": "a.py"},
                        "done": True,
                        "requires_confirmation": True,
                    },
                )
            ]
        )
        item = await self.core.confirm_tool("tool-1")
        assert item is not None
        self.assertEqual(self.executor.confirmed, ["tool-1"])

    async def test_rollback_through_core(self) -> None:
        for _ in range(3):
            prepared = await self.core.send_message("step")
            self.core.consume([TurnEnded(session_id="s1", turn_id=prepared.turn_id)])
        result = await self.core.rollback_to_turn("s1", 0)
        self.assertTrue(result.performed)
        self.assertEqual(self.core.sessions.turn_count("s1"), 1)

    async def test_config_drives_components(self) -> None:
        config = {
            **DEFAULT_CONFIG,
            "retry": {"max_retries": 7},
            "snapshot": {"enabled": False},
        }
        core = FlowChatCore(
            config,
            bootstrap=FakeBootstrap(),
            uploader=FakeUploader(),
            upstream=self.upstream,
            snapshot_store=self.store,
        )
        self.assertEqual(core.retry_queue.max_retries, 7)
        prepared = await core.send_message("hi")
        core.consume([TurnEnded(session_id="s1", turn_id=prepared.turn_id)])
        await core.settle()
        self.assertEqual(self.store.created, [])
        await core.shutdown()


if __name__ == "__main__":
    unittest.main()
