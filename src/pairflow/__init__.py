"""Top-level package for pairflow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import load_config
    from .core import FlowChatCore
    from .events.bus import EventBus
    from .exceptions import (
        FlowChatError,
        ImageUploadFailed,
        NoWorkspaceModel,
        SnapshotRestoreFailed,
        UpstreamRejected,
    )
    from .session_manager import SessionManager

__all__ = [
    "EventBus",
    "FlowChatCore",
    "FlowChatError",
    "ImageUploadFailed",
    "NoWorkspaceModel",
    "SessionManager",
    "SnapshotRestoreFailed",
    "UpstreamRejected",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``python -m pairflow`` stays cheap to start."""
    if name == "FlowChatCore":
        from .core import FlowChatCore

        return FlowChatCore
    if name == "SessionManager":
        from .session_manager import SessionManager

        return SessionManager
    if name == "EventBus":
        from .events.bus import EventBus

        return EventBus
    if name == "load_config":
        from .config import load_config

        return load_config
    if name in {
        "FlowChatError",
        "ImageUploadFailed",
        "NoWorkspaceModel",
        "SnapshotRestoreFailed",
        "UpstreamRejected",
    }:
        from . import exceptions

        return getattr(exceptions, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
