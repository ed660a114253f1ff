"""Composition root wiring the session manager, dispatcher, gate, rollback and retry."""

from __future__ import annotations

from collections.abc import AsyncIterable, Iterable, Sequence
from copy import deepcopy
import logging
from typing import Any

from .config import DEFAULT_CONFIG
from .confirmation import ToolConfirmationGate
from .dispatcher import MessageDispatcher
from .events.bus import EventBus
from .events.inbound import InboundEvent, TurnCancelled
from .exceptions import FlowChatError, UpstreamRejected
from .interfaces import (
    AgentController,
    ImageUploader,
    SessionBootstrap,
    SnapshotStore,
    ToolExecutor,
    UpstreamSender,
)
from .models import ContextItem, PreparedMessage, RollbackResult, ToolItem, TurnSnapshot
from .retry_queue import MessageRetryQueue
from .session_manager import SessionManager
from .snapshots import TurnRollbackCoordinator
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)


class FlowChatCore:
    """Own one conversation core: its bus, its state and every collaborator.

    Nothing here is a module-level singleton; construct one core per
    workspace and call ``shutdown()`` when done.
    """

    def __init__(
        self,
        config: dict[str, dict[str, Any]] | None = None,
        *,
        bootstrap: SessionBootstrap,
        uploader: ImageUploader,
        upstream: UpstreamSender,
        snapshot_store: SnapshotStore,
        tool_executor: ToolExecutor | None = None,
        agent_controller: AgentController | None = None,
    ) -> None:
        self.config = deepcopy(config) if config is not None else deepcopy(DEFAULT_CONFIG)
        session_cfg = self.config["session"]

        self.bus = EventBus()
        self.tasks = TaskManager()
        self.sessions = SessionManager(
            self.bus,
            default_mode=session_cfg["default_mode"],
            max_context_tokens=session_cfg["max_context_tokens"],
        )
        self.confirmation = ToolConfirmationGate(self.sessions, tool_executor)
        self.dispatcher = MessageDispatcher(
            self.sessions,
            bootstrap,
            uploader,
            upstream,
            default_agent_type=session_cfg["default_mode"],
        )
        self.rollback = TurnRollbackCoordinator(
            self.sessions,
            snapshot_store,
            self.bus,
            self.tasks,
            enabled=bool(self.config["snapshot"]["enabled"]),
        )
        self.retry_queue = MessageRetryQueue(
            self.dispatcher, max_retries=int(self.config["retry"]["max_retries"])
        )
        self.agent_controller = agent_controller

    # ------------------------------------------------------------------
    # Outbound actions
    # ------------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        contexts: Sequence[ContextItem] = (),
        agent_type: str | None = None,
        *,
        session_id: str | None = None,
    ) -> PreparedMessage:
        """Send a message; a rejected send is queued for retry and re-raised."""
        try:
            return await self.dispatcher.send_message(
                text, contexts, agent_type, session_id=session_id
            )
        except UpstreamRejected as exc:
            if exc.prepared is not None:
                self.retry_queue.enqueue_rejected(exc)
            raise

    async def cancel_turn(self, session_id: str, turn_id: str) -> bool:
        """Start a cooperative cancel; returns False if the turn already finished."""
        if not self.sessions.request_cancel(session_id, turn_id):
            return False
        if self.agent_controller is None:
            return True
        try:
            await self.agent_controller.cancel_turn(session_id, turn_id)
        except Exception:
            LOGGER.exception(
                "turn.cancel_failed",
                extra={
                    "event": "turn.cancel_failed",
                    "session_id": session_id,
                    "turn_id": turn_id,
                },
            )
            # Nothing upstream will acknowledge; finish the cancel locally.
            self.sessions.apply_event(TurnCancelled(session_id=session_id, turn_id=turn_id))
            raise
        return True

    async def confirm_tool(
        self, tool_id: str, updated_input: dict[str, Any] | None = None
    ) -> ToolItem | None:
        return await self.confirmation.confirm(tool_id, updated_input)

    async def reject_tool(self, tool_id: str) -> ToolItem | None:
        return await self.confirmation.reject(tool_id)

    async def rollback_to_turn(self, session_id: str, turn_index: int) -> RollbackResult:
        return await self.rollback.rollback_to_turn(session_id, turn_index)

    async def list_snapshots(self, session_id: str) -> list[TurnSnapshot]:
        return await self.rollback.list_snapshots(session_id)

    # ------------------------------------------------------------------
    # Inbound stream
    # ------------------------------------------------------------------

    def consume(self, events: Iterable[InboundEvent]) -> int:
        """Apply inbound events; events that fail routing are dropped."""
        return self.sessions.apply_events(events)

    async def consume_stream(self, events: AsyncIterable[InboundEvent]) -> int:
        """Apply events from an async source as they arrive."""
        applied = 0
        async for event in events:
            try:
                self.sessions.apply_event(event)
            except FlowChatError:
                continue
            applied += 1
        return applied

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def settle(self) -> None:
        """Wait for scheduled bus handlers and snapshot requests to finish."""
        await self.bus.drain()
        await self.tasks.await_all()

    async def shutdown(self) -> None:
        """Stop snapshot requests and cancel background work."""
        self.rollback.close()
        await self.tasks.cancel_all()
        await self.bus.drain()
        self.bus.clear()
        LOGGER.info("core.shutdown", extra={"event": "core.shutdown"})
