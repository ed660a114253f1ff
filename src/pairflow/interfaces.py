"""Contracts the core requires of its external collaborators."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from .models import ImageContext, SessionConfig, TurnSnapshot


class SessionBootstrap(Protocol):
    """Model/session bootstrap service."""

    async def create_session(self, config: SessionConfig) -> str: ...

    async def resolve_default_model(self) -> str | None: ...


class ImageUploader(Protocol):
    """Uploads inline image payloads; all-or-nothing per call."""

    async def upload_image_contexts(self, items: Sequence[ImageContext]) -> None: ...


class UpstreamSender(Protocol):
    """Delivers the model-facing body of a message to the agent backend."""

    async def send_message(
        self, session_id: str, turn_id: str, body: str, agent_type: str
    ) -> None: ...


class SnapshotStore(Protocol):
    """Opaque turn snapshot persistence."""

    async def create_snapshot(self, session_id: str, turn_index: int) -> None: ...

    async def restore_to_turn(self, session_id: str, turn_index: int) -> list[str]: ...

    async def list_snapshots(self, session_id: str) -> list[TurnSnapshot]: ...


class ToolExecutor(Protocol):
    """Downstream tool execution that waits on user consent."""

    async def confirm_tool(
        self, session_id: str, tool_id: str, tool_input: dict[str, Any]
    ) -> None: ...

    async def reject_tool(self, session_id: str, tool_id: str) -> None: ...


class AgentController(Protocol):
    """Cooperative cancellation of an in-flight agent execution."""

    async def cancel_turn(self, session_id: str, turn_id: str) -> None: ...
