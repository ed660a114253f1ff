"""Event bus for decoupled component communication.

Usage:
    bus = EventBus()

    # Subscribe to events
    async def on_file_changed(event):
        print(f"File changed: {event.data['filePath']}")

    bus.subscribe("editor:file-changed", on_file_changed)

    # Publish events
    await bus.publish("editor:file-changed", {"filePath": "/path/to/file"})

The bus is constructed by whoever owns the core (see ``FlowChatCore``); there
is no module-level instance.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import inspect
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Simple event bus for publish/subscribe pattern.

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and never prevents delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """Subscribe to an event.

        Args:
            event_name: Event to listen for (e.g., "file-tree:refresh")
            handler: Function or coroutine function called with an ``Event``
        """
        if event_name not in self._subscribers:
            self._subscribers[event_name] = []
        self._subscribers[event_name].append(handler)
        LOGGER.debug(f"Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        """Unsubscribe from an event.

        Args:
            event_name: Event to stop listening to
            handler: Handler function to remove
        """
        if event_name in self._subscribers:
            try:
                self._subscribers[event_name].remove(handler)
                LOGGER.debug(f"Unsubscribed from event: {event_name}")
            except ValueError:
                pass

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish an event to all subscribers, awaiting coroutine handlers.

        Args:
            event_name: Event name
            data: Event data
            source: Optional source identifier
        """
        event = Event(name=event_name, data=data, source=source)
        handlers = list(self._subscribers.get(event_name, []))

        if not handlers:
            LOGGER.debug(f"No subscribers for event: {event_name}")
            return

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                LOGGER.error(f"Event handler failed for {event_name}: {e}")

    def publish_nowait(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish from synchronous code.

        Plain handlers run immediately; coroutine handlers are scheduled on
        the running loop (or skipped with a warning when no loop runs).
        """
        event = Event(name=event_name, data=data, source=source)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                result = handler(event)
            except Exception as e:
                LOGGER.error(f"Event handler failed for {event_name}: {e}")
                continue
            if inspect.isawaitable(result):
                self._schedule(event_name, result)

    def _schedule(self, event_name: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning(
                f"Dropping async handler for {event_name}: no running event loop"
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _run() -> None:
            try:
                await awaitable
            except Exception as e:
                LOGGER.error(f"Event handler failed for {event_name}: {e}")

        task = loop.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for handlers scheduled by ``publish_nowait`` to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self, event_name: str | None = None) -> None:
        """Clear subscribers.

        Args:
            event_name: Specific event to clear, or None for all
        """
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
