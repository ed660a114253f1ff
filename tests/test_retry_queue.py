"""Tests for the rejected-message retry queue."""

from __future__ import annotations

import unittest

from pairflow.dispatcher import MessageDispatcher
from pairflow.exceptions import UpstreamRejected
from pairflow.models import ImageContext, QueueStatus, SessionConfig, TurnStatus
from pairflow.retry_queue import MessageRetryQueue
from pairflow.session_manager import SessionManager


class FakeBootstrap:
    async def create_session(self, config: SessionConfig) -> str:
        return "s-new"

    async def resolve_default_model(self) -> str | None:
        return "coder-large"


class FakeUploader:
    async def upload_image_contexts(self, items: list[ImageContext]) -> None:
        return None


class FlakyUpstream:
    """Refuses the first ``failures`` sends."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0
        self.delivered: list[str] = []

    async def send_message(self, session_id: str, turn_id: str, body: str, agent_type: str) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("upstream busy")
        self.delivered.append(turn_id)


class MessageRetryQueueTests(unittest.IsolatedAsyncioTestCase):
    """Validate retry bookkeeping and local turn reconciliation."""

    def _build(self, failures: int, max_retries: int = 3) -> None:
        self.manager = SessionManager()
        self.manager.create_session("s1")
        self.upstream = FlakyUpstream(failures)
        self.dispatcher = MessageDispatcher(
            self.manager, FakeBootstrap(), FakeUploader(), self.upstream
        )
        self.queue = MessageRetryQueue(self.dispatcher, max_retries=max_retries)

    async def _rejected_send(self) -> str:
        with self.assertRaises(UpstreamRejected) as ctx:
            await self.dispatcher.send_message("hello")
        return self.queue.enqueue_rejected(ctx.exception).id

    async def test_successful_retry_reuses_local_turn(self) -> None:
        self._build(failures=1)
        message_id = await self._rejected_send()

        result = await self.queue.retry(message_id)

        self.assertEqual(result.status, QueueStatus.COMPLETED)
        self.assertEqual(result.retry_count, 0)
        self.assertEqual(self.manager.turn_count("s1"), 1)
        turn = self.manager.get_turn("s1", result.local_dialog_turn_id)
        assert turn is not None
        self.assertEqual(turn.status, TurnStatus.PENDING)
        self.assertEqual(self.upstream.delivered, [result.local_dialog_turn_id])

    async def test_failed_after_max_retries(self) -> None:
        self._build(failures=10, max_retries=2)
        message_id = await self._rejected_send()

        first = await self.queue.retry(message_id)
        self.assertEqual(first.status, QueueStatus.QUEUED)
        self.assertEqual(first.retry_count, 1)

        second = await self.queue.retry(message_id)
        self.assertEqual(second.status, QueueStatus.FAILED)
        self.assertEqual(second.retry_count, 2)
        self.assertEqual(second.last_error, "upstream busy")

        turn = self.manager.get_turn("s1", second.local_dialog_turn_id)
        assert turn is not None
        self.assertEqual(turn.status, TurnStatus.ERROR)
        self.assertEqual(self.manager.turn_count("s1"), 1)

    async def test_finished_messages_are_not_retried_again(self) -> None:
        self._build(failures=1)
        message_id = await self._rejected_send()
        await self.queue.retry(message_id)
        attempts = self.upstream.attempts

        again = await self.queue.retry(message_id)
        self.assertEqual(again.status, QueueStatus.COMPLETED)
        self.assertEqual(self.upstream.attempts, attempts)

    async def test_enqueue_same_turn_twice_returns_existing(self) -> None:
        self._build(failures=1)
        with self.assertRaises(UpstreamRejected) as ctx:
            await self.dispatcher.send_message("hello")
        first = self.queue.enqueue_rejected(ctx.exception)
        second = self.queue.enqueue_rejected(ctx.exception)
        self.assertEqual(first.id, second.id)
        self.assertEqual(len(self.queue.messages()), 1)

    async def test_drain_retries_all_queued(self) -> None:
        self._build(failures=2)
        await self._rejected_send()
        await self._rejected_send()

        results = await self.queue.drain()

        self.assertEqual([r.status for r in results], [QueueStatus.COMPLETED, QueueStatus.COMPLETED])
        self.assertEqual(self.manager.turn_count("s1"), 2)
        self.assertEqual(self.queue.messages(QueueStatus.QUEUED), [])

    async def test_deleted_session_abandons_message(self) -> None:
        self._build(failures=1)
        message_id = await self._rejected_send()
        self.manager.delete_session("s1")

        with self.assertLogs("pairflow.session_manager", level="WARNING"):
            result = await self.queue.retry(message_id)
        self.assertEqual(result.status, QueueStatus.FAILED)

    async def test_enqueue_requires_prepared_message(self) -> None:
        self._build(failures=0)
        with self.assertRaises(ValueError):
            self.queue.enqueue_rejected(UpstreamRejected("no payload"))

    async def test_unknown_message_id(self) -> None:
        self._build(failures=0)
        with self.assertRaises(KeyError):
            await self.queue.retry("missing")


if __name__ == "__main__":
    unittest.main()
