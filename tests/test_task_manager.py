"""Tests for the TaskManager lifecycle helper."""

from __future__ import annotations

import asyncio
import unittest

from pairflow.task_manager import TaskManager


class TaskManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate background task tracking, failure logging and shutdown."""

    async def test_spawn_and_cancel_all(self) -> None:
        tm = TaskManager()
        cancelled: list[bool] = []

        async def _worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        task = tm.spawn(_worker())
        await asyncio.sleep(0)  # Let the task start.
        self.assertEqual(tm.active_count, 1)
        await tm.cancel_all()
        self.assertTrue(task.done())
        self.assertTrue(cancelled)
        self.assertEqual(tm.active_count, 0)

    async def test_named_task_is_retrievable_until_done(self) -> None:
        tm = TaskManager()
        gate = asyncio.Event()

        async def _worker() -> None:
            await gate.wait()

        task = tm.spawn(_worker(), name="snapshot:s1:0")
        self.assertIs(tm.get("snapshot:s1:0"), task)
        gate.set()
        await task
        await asyncio.sleep(0)  # Let done callbacks run.
        self.assertIsNone(tm.get("snapshot:s1:0"))

    async def test_failed_task_is_logged_with_label(self) -> None:
        tm = TaskManager()

        async def _boom() -> None:
            raise OSError("disk full")

        with self.assertLogs("pairflow.task_manager", level="WARNING") as logs:
            tm.spawn(_boom(), label="snapshot.create")
            await tm.await_all()
            await asyncio.sleep(0)  # Let done callbacks run.
        self.assertTrue(any("snapshot.create.failed" in line for line in logs.output))

    async def test_await_all_waits_without_cancelling(self) -> None:
        tm = TaskManager()
        results: list[int] = []

        async def _worker(value: int) -> None:
            await asyncio.sleep(0)
            results.append(value)

        for value in range(3):
            tm.spawn(_worker(value))
        await tm.await_all()
        self.assertEqual(sorted(results), [0, 1, 2])

    async def test_anonymous_tasks_self_clean(self) -> None:
        tm = TaskManager()

        async def _quick() -> None:
            pass

        task = asyncio.create_task(_quick())
        tm.add(task)
        await task
        await asyncio.sleep(0)
        self.assertEqual(tm.active_count, 0)
        await tm.cancel_all()


if __name__ == "__main__":
    unittest.main()
