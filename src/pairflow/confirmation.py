"""Tool confirmation gate.

Tools that need explicit user approval wait in ``pending_confirmation``:

    pending_confirmation -> confirmed -> running -> completed | error
    pending_confirmation -> rejected            (terminal, never a result)

The gate keeps no state of its own: a decision is read back from the tool
item (``user_confirmed``). Tree changes are emitted as ``ToolConfirmed`` /
``ToolRejected`` events for the Session Manager to apply, after which the
downstream executor is told to resume or skip the tool. A confirmed tool the
executor fails to resume is marked ``error`` so its round can settle.
"""

from __future__ import annotations

from copy import deepcopy
import logging
from typing import Any

from .events.inbound import ToolConfirmed, ToolFailed, ToolRejected
from .exceptions import InvalidToolTransition, UnknownTool
from .interfaces import ToolExecutor
from .models import ItemStatus, ToolItem
from .session_manager import SessionManager, ToolLocation

LOGGER = logging.getLogger(__name__)


class ToolConfirmationGate:
    """Hold tools that need consent and resolve them exactly once."""

    def __init__(
        self, session_manager: SessionManager, executor: ToolExecutor | None = None
    ) -> None:
        self.sessions = session_manager
        self.executor = executor

    def decision(self, tool_id: str) -> ItemStatus | None:
        """Return the user's decision for a tool, if one was made."""
        item = self.sessions.get_tool(tool_id)
        if item is None or item.user_confirmed is None:
            return None
        return ItemStatus.CONFIRMED if item.user_confirmed else ItemStatus.REJECTED

    def pending(self, session_id: str | None = None) -> list[ToolItem]:
        """List tools currently awaiting confirmation (optionally for one session)."""
        waiting: list[ToolItem] = []
        for session in self.sessions.list_sessions():
            if session_id is not None and session.session_id != session_id:
                continue
            for turn in session.dialog_turns:
                for model_round in turn.model_rounds:
                    waiting.extend(
                        item
                        for item in model_round.items
                        if isinstance(item, ToolItem)
                        and item.status == ItemStatus.PENDING_CONFIRMATION
                    )
        return waiting

    def _awaiting(self, tool_id: str) -> ToolLocation:
        location = self.sessions.locate_tool(tool_id)
        if location is None:
            raise UnknownTool(tool_id)
        previous = self.decision(tool_id)
        if previous is not None:
            raise InvalidToolTransition(
                f"Tool {tool_id} was already {previous.value}; decisions are final."
            )
        if location.status != ItemStatus.PENDING_CONFIRMATION:
            raise InvalidToolTransition(
                f"Tool {tool_id} is {location.status.value}, not awaiting confirmation."
            )
        return location

    async def confirm(
        self, tool_id: str, updated_input: dict[str, Any] | None = None
    ) -> ToolItem | None:
        """Approve a tool, optionally replacing its input, and resume execution."""
        if updated_input is not None and not isinstance(updated_input, dict):
            raise TypeError("updated_input must be a dict when provided.")
        location = self._awaiting(tool_id)
        self.sessions.apply_event(
            ToolConfirmed(
                session_id=location.session_id,
                turn_id=location.turn_id,
                tool_id=tool_id,
                updated_input=deepcopy(updated_input),
            )
        )
        LOGGER.info(
            "tool.confirmed",
            extra={
                "event": "tool.confirmed",
                "session_id": location.session_id,
                "turn_id": location.turn_id,
                "tool_id": tool_id,
                "input_edited": updated_input is not None,
            },
        )

        item = self.sessions.get_tool(tool_id)
        if self.executor is None or item is None:
            return item
        try:
            await self.executor.confirm_tool(
                location.session_id, tool_id, deepcopy(item.tool_call.input)
            )
        except Exception as exc:  # noqa: BLE001 - re-raised after the tool is failed.
            self._log_executor_failure("confirm", location, tool_id)
            self.sessions.apply_event(
                ToolFailed(
                    session_id=location.session_id,
                    turn_id=location.turn_id,
                    tool_id=tool_id,
                    error=f"Tool executor failed to resume {tool_id}: {exc}",
                )
            )
            raise
        return self.sessions.get_tool(tool_id)

    async def reject(self, tool_id: str) -> ToolItem | None:
        """Reject a tool; sibling tools in the same round are unaffected."""
        location = self._awaiting(tool_id)
        self.sessions.apply_event(
            ToolRejected(
                session_id=location.session_id,
                turn_id=location.turn_id,
                tool_id=tool_id,
            )
        )
        LOGGER.info(
            "tool.rejected",
            extra={
                "event": "tool.rejected",
                "session_id": location.session_id,
                "turn_id": location.turn_id,
                "tool_id": tool_id,
            },
        )
        if self.executor is not None:
            try:
                await self.executor.reject_tool(location.session_id, tool_id)
            except Exception:  # noqa: BLE001 - rejected is terminal; re-raised.
                self._log_executor_failure("reject", location, tool_id)
                raise
        return self.sessions.get_tool(tool_id)

    def _log_executor_failure(self, action: str, location: ToolLocation, tool_id: str) -> None:
        LOGGER.exception(
            "tool.executor_failed",
            extra={
                "event": "tool.executor_failed",
                "action": action,
                "session_id": location.session_id,
                "turn_id": location.turn_id,
                "tool_id": tool_id,
            },
        )

