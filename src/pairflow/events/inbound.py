"""Closed set of events the Session Manager applies to the conversation tree.

Stream sources, the dispatcher, the confirmation gate and the retry queue
all express state changes as one of these types; ``SessionManager`` keeps a
handler for every entry in ``INBOUND_EVENT_TYPES``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from ..models import ImageContext, UserMessage

FragmentKind = Literal["text", "thinking", "tool_call", "tool_result"]


@dataclass(frozen=True)
class TurnStarted:
    session_id: str
    turn_id: str
    user_message: UserMessage


@dataclass(frozen=True)
class ImageAnalysisStarted:
    session_id: str
    turn_id: str
    images: tuple[ImageContext, ...]


@dataclass(frozen=True)
class ImageAnalysisFinished:
    session_id: str
    turn_id: str
    image_id: str
    result: dict[str, Any] | None = None
    error: str | None = None


@dataclass(frozen=True)
class RoundStarted:
    session_id: str
    turn_id: str
    round_id: str
    index: int | None = None


@dataclass(frozen=True)
class StreamFragment:
    """A raw content fragment; classified by the chunk parser before use."""

    session_id: str
    turn_id: str
    round_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolConfirmationRequired:
    session_id: str
    turn_id: str
    tool_id: str


@dataclass(frozen=True)
class ToolConfirmed:
    session_id: str
    turn_id: str
    tool_id: str
    updated_input: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolRejected:
    session_id: str
    turn_id: str
    tool_id: str


@dataclass(frozen=True)
class ToolStarted:
    session_id: str
    turn_id: str
    tool_id: str


@dataclass(frozen=True)
class ToolFailed:
    """The tool could not run (for example the executor refused to resume it)."""

    session_id: str
    turn_id: str
    tool_id: str
    error: str


@dataclass(frozen=True)
class RoundEnded:
    session_id: str
    turn_id: str
    round_id: str
    error: str | None = None


@dataclass(frozen=True)
class RoundCancelled:
    """Acknowledgement from the agent that a round stopped producing output."""

    session_id: str
    turn_id: str
    round_id: str


@dataclass(frozen=True)
class TurnEnded:
    """The agent finished producing rounds for the turn."""

    session_id: str
    turn_id: str


@dataclass(frozen=True)
class TurnFailed:
    session_id: str
    turn_id: str
    error: str


@dataclass(frozen=True)
class TurnCancelRequested:
    session_id: str
    turn_id: str


@dataclass(frozen=True)
class TurnCancelled:
    """Acknowledgement that the agent stopped the whole turn."""

    session_id: str
    turn_id: str


@dataclass(frozen=True)
class TokenUsageUpdated:
    session_id: str
    turn_id: str
    input_tokens: int
    output_tokens: int = 0
    total_tokens: int | None = None


InboundEvent = (
    TurnStarted
    | ImageAnalysisStarted
    | ImageAnalysisFinished
    | RoundStarted
    | StreamFragment
    | ToolConfirmationRequired
    | ToolConfirmed
    | ToolRejected
    | ToolStarted
    | ToolFailed
    | RoundEnded
    | RoundCancelled
    | TurnEnded
    | TurnFailed
    | TurnCancelRequested
    | TurnCancelled
    | TokenUsageUpdated
)

INBOUND_EVENT_TYPES: tuple[type, ...] = (
    TurnStarted,
    ImageAnalysisStarted,
    ImageAnalysisFinished,
    RoundStarted,
    StreamFragment,
    ToolConfirmationRequired,
    ToolConfirmed,
    ToolRejected,
    ToolStarted,
    ToolFailed,
    RoundEnded,
    RoundCancelled,
    TurnEnded,
    TurnFailed,
    TurnCancelRequested,
    TurnCancelled,
    TokenUsageUpdated,
)
