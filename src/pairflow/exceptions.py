"""Domain exception hierarchy for the conversation core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import PreparedMessage


class FlowChatError(RuntimeError):
    """Base class for all domain-level errors."""


class UnknownSession(FlowChatError):
    """Raised when an event or action references a session that does not exist."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class UnknownTurn(FlowChatError):
    """Raised when an event or action references a turn that does not exist."""

    def __init__(self, session_id: str, turn_id: str) -> None:
        super().__init__(f"Unknown dialog turn {turn_id} in session {session_id}")
        self.session_id = session_id
        self.turn_id = turn_id


class UnknownTool(FlowChatError):
    """Raised when a confirmation targets a tool item that cannot be found."""

    def __init__(self, tool_id: str) -> None:
        super().__init__(f"Unknown tool item: {tool_id}")
        self.tool_id = tool_id


class InvalidToolTransition(FlowChatError):
    """Raised when a tool item is asked to move to a state it cannot reach."""


class MalformedFragment(FlowChatError):
    """Raised by the chunk parser for a fragment it cannot classify."""


class NoWorkspaceModel(FlowChatError):
    """Raised when no default model can be resolved for a new session."""


class ImageUploadFailed(FlowChatError):
    """Raised when inline image contexts cannot be uploaded before a send."""


class UpstreamRejected(FlowChatError):
    """Raised when the upstream agent refuses or fails to accept a message."""

    def __init__(self, message: str, prepared: PreparedMessage | None = None) -> None:
        super().__init__(message)
        self.prepared = prepared


class SnapshotRestoreFailed(FlowChatError):
    """Raised when the snapshot store cannot restore a turn, fully or partially."""

    def __init__(
        self,
        message: str,
        session_id: str,
        turn_index: int,
        restored_files: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.turn_index = turn_index
        self.restored_files = list(restored_files or [])


class NoRollbackTarget(FlowChatError):
    """Raised when a rollback targets a turn index the session does not have."""


class ConfigValidationError(FlowChatError):
    """Raised when configuration cannot be validated safely."""
