"""Lifecycle tracking for fire-and-forget asyncio work (snapshot requests)."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track background tasks so shutdown can cancel or await them."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str | None = None,
        label: str = "task",
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and start tracking it.

        ``label`` is the dotted prefix used when a failure is logged, e.g.
        ``snapshot.create`` logs ``snapshot.create.failed``.
        """
        task = asyncio.get_running_loop().create_task(coro)
        self.add(task, name=name, label=label)
        return task

    def add(
        self, task: asyncio.Task[Any], name: str | None = None, *, label: str = "task"
    ) -> None:
        """Register a task, optionally under a unique name.

        Named tasks replace any prior task with the same name (the old task
        is *not* cancelled). Every task self-cleans on completion and its
        unhandled exception, if any, is logged.
        """
        if name is not None:
            self._named[name] = task
            task.add_done_callback(lambda done: self._forget_named(name, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
        task.add_done_callback(lambda done: self._log_exception(done, label))

    def _forget_named(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    def _log_exception(self, task: asyncio.Task[Any], label: str) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                f"{label}.failed",
                extra={
                    "event": f"{label}.failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        """Return the named task or ``None`` if not registered."""
        return self._named.get(name)

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._all() if not task.done())

    def _all(self) -> list[asyncio.Task[Any]]:
        return list(self._named.values()) + list(self._anonymous)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = [task for task in self._all() if not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001 - already logged by the done callback.
                pass
        self._named.clear()
        self._anonymous.clear()

    async def await_all(self) -> None:
        """Await every tracked task without cancelling; failures are only logged."""
        while True:
            tasks = [task for task in self._all() if not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)
