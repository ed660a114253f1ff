"""Conversation tree data model: sessions, dialog turns, model rounds, flow items."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any, Literal
from uuid import uuid4

from .stream.partial_json import IncrementalJsonParser


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class SessionStatus(str, Enum):
    """Derived session status; never stored on the session itself."""

    ACTIVE = "active"
    IDLE = "idle"
    ERROR = "error"


class TurnStatus(str, Enum):
    PENDING = "pending"
    IMAGE_ANALYZING = "image_analyzing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    ERROR = "error"


class RoundStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"
    PENDING_CONFIRMATION = "pending_confirmation"


class ItemStatus(str, Enum):
    """Status shared by every flow item kind."""

    PENDING = "pending"
    PREPARING = "preparing"
    STREAMING = "streaming"
    RUNNING = "running"
    ANALYZING = "analyzing"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"
    REJECTED = "rejected"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# --------------------------------------------------------------------------
# Context items attached to an outgoing user message.
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class FileContext:
    file_path: str
    relative_path: str | None = None
    type: Literal["file"] = "file"


@dataclass(frozen=True)
class DirectoryContext:
    directory_path: str
    type: Literal["directory"] = "directory"


@dataclass(frozen=True)
class CodeSnippetContext:
    file_path: str
    start_line: int
    end_line: int
    type: Literal["code-snippet"] = "code-snippet"


@dataclass(frozen=True)
class ImageContext:
    """An image attached to a message, either a local file or inline clipboard data."""

    id: str
    image_name: str = ""
    mime_type: str = "image/png"
    data_url: str | None = None
    image_path: str | None = None
    is_local: bool = False
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    source: str = "clipboard"
    type: Literal["image"] = "image"

    @property
    def needs_upload(self) -> bool:
        """Inline (non-local) images must be uploaded before they can be referenced."""
        return not self.is_local and bool(self.data_url)


@dataclass(frozen=True)
class TerminalCommandContext:
    command: str
    type: Literal["terminal-command"] = "terminal-command"


@dataclass(frozen=True)
class GitRefContext:
    ref_value: str
    type: Literal["git-ref"] = "git-ref"


@dataclass(frozen=True)
class UrlContext:
    url: str
    type: Literal["url"] = "url"


ContextItem = (
    FileContext
    | DirectoryContext
    | CodeSnippetContext
    | ImageContext
    | TerminalCommandContext
    | GitRefContext
    | UrlContext
)


# --------------------------------------------------------------------------
# Flow items.
# --------------------------------------------------------------------------


@dataclass(kw_only=True)
class FlowItem:
    id: str
    status: ItemStatus
    timestamp: int = field(default_factory=now_ms)


@dataclass(kw_only=True)
class TextItem(FlowItem):
    content: str = ""
    is_streaming: bool = True
    kind: Literal["text"] = field(default="text", init=False)


@dataclass(kw_only=True)
class ThinkingItem(FlowItem):
    content: str = ""
    is_streaming: bool = True
    is_collapsed: bool = False
    kind: Literal["thinking"] = field(default="thinking", init=False)


@dataclass
class ToolCall:
    """Echo of the tool invocation input as the model produced (or the user edited) it."""

    id: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    result: Any = None
    success: bool = True
    error: str | None = None
    duration_ms: int | None = None


@dataclass(kw_only=True)
class ToolItem(FlowItem):
    tool_name: str
    tool_call: ToolCall
    tool_result: ToolResult | None = None
    requires_confirmation: bool = False
    user_confirmed: bool | None = None
    is_params_streaming: bool = False
    partial_params: dict[str, Any] | None = None
    start_time: int | None = None
    end_time: int | None = None
    kind: Literal["tool"] = field(default="tool", init=False)
    params_parser: IncrementalJsonParser = field(
        default_factory=IncrementalJsonParser, repr=False, compare=False
    )

    @property
    def params_parse_ok(self) -> bool:
        """Whether the latest partial (or final) parameter parse succeeded."""
        return self.params_parser.last_parse_ok


@dataclass(kw_only=True)
class ImageAnalysisItem(FlowItem):
    image_context: ImageContext
    result: dict[str, Any] | None = None
    error: str | None = None
    kind: Literal["image-analysis"] = field(default="image-analysis", init=False)


AnyFlowItem = TextItem | ThinkingItem | ToolItem | ImageAnalysisItem


# --------------------------------------------------------------------------
# Rounds, turns, sessions.
# --------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class UserMessage:
    """The display body of a user message; immutable once the turn exists."""

    id: str
    content: str
    timestamp: int = field(default_factory=now_ms)
    has_images: bool = False


@dataclass
class ImageAnalysisPhase:
    items: list[ImageAnalysisItem] = field(default_factory=list)
    status: Literal["analyzing", "completed", "error"] = "analyzing"
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None


@dataclass
class ModelRound:
    id: str
    index: int
    items: list[AnyFlowItem] = field(default_factory=list)
    status: RoundStatus = RoundStatus.STREAMING
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None
    error: str | None = None
    end_requested: bool = False

    @property
    def is_streaming(self) -> bool:
        return self.status == RoundStatus.STREAMING


@dataclass
class DialogTurn:
    id: str
    session_id: str
    user_message: UserMessage
    model_rounds: list[ModelRound] = field(default_factory=list)
    status: TurnStatus = TurnStatus.PENDING
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None
    error: str | None = None
    token_usage: TokenUsage | None = None
    image_analysis_phase: ImageAnalysisPhase | None = None
    end_requested: bool = False
    touched_at: int = 0


@dataclass
class SessionConfig:
    model_name: str | None = None
    mode: str = "agentic"


@dataclass
class Session:
    session_id: str
    config: SessionConfig = field(default_factory=SessionConfig)
    dialog_turns: list[DialogTurn] = field(default_factory=list)
    title: str | None = None
    mode: str = "agentic"
    max_context_tokens: int | None = None
    current_token_usage: TokenUsage | None = None
    created_at: int = field(default_factory=now_ms)
    last_active_at: int = field(default_factory=now_ms)
    error: str | None = None


# --------------------------------------------------------------------------
# Outgoing messages, snapshots, rollback results.
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class PreparedMessage:
    """A message ready for upstream delivery, with both bodies kept apart."""

    session_id: str
    turn_id: str
    display_body: str
    model_body: str
    agent_type: str


@dataclass
class QueuedMessage:
    id: str
    prepared: PreparedMessage
    status: QueueStatus = QueueStatus.QUEUED
    retry_count: int = 0
    timestamp: int = field(default_factory=now_ms)
    last_error: str | None = None

    @property
    def session_id(self) -> str:
        return self.prepared.session_id

    @property
    def local_dialog_turn_id(self) -> str:
        return self.prepared.turn_id


@dataclass(frozen=True)
class TurnSnapshot:
    session_id: str
    turn_index: int
    modified_files: tuple[str, ...] = ()
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class RollbackResult:
    session_id: str
    turn_index: int
    restored_files: tuple[str, ...]
    performed: bool
