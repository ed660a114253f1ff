"""Classify raw stream fragments into typed chunks.

A single corrupt fragment must never abort a stream: ``parse_fragment``
drops it, logs, and returns ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Literal

from ..events.inbound import StreamFragment
from ..exceptions import MalformedFragment

LOGGER = logging.getLogger(__name__)

ChunkKind = Literal["text", "thinking", "tool_call", "tool_result"]


@dataclass(frozen=True)
class ToolInfo:
    id: str
    tool: str = ""
    delta: str = ""
    input: dict[str, Any] | None = None
    done: bool = False
    requires_confirmation: bool = False


@dataclass(frozen=True)
class ToolResultInfo:
    id: str
    result: Any = None
    success: bool = True
    error: str | None = None
    duration_ms: int | None = None


@dataclass(frozen=True)
class ParsedChunk:
    """A single typed chunk of model or tool output within one round."""

    kind: ChunkKind
    content: str = ""
    done: bool = False
    tool_info: ToolInfo | None = None
    tool_result: ToolResultInfo | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedFragment(f"Fragment field {key!r} must be a non-empty string.")
    return value


def _parse_text(kind: ChunkKind, payload: dict[str, Any]) -> ParsedChunk:
    text = payload.get("text", "")
    if text is None:
        text = ""
    if not isinstance(text, str):
        raise MalformedFragment(f"{kind} fragment text must be a string.")
    return ParsedChunk(kind=kind, content=text, done=bool(payload.get("done", False)))


def _parse_tool_call(payload: dict[str, Any]) -> ParsedChunk:
    tool_id = _require_str(payload, "id")
    tool_name = payload.get("tool", "")
    if not isinstance(tool_name, str):
        raise MalformedFragment("tool_call fragment tool name must be a string.")
    delta = payload.get("delta", "")
    if delta is None:
        delta = ""
    if not isinstance(delta, str):
        raise MalformedFragment("tool_call fragment delta must be a string.")
    final_input = payload.get("input")
    if final_input is not None and not isinstance(final_input, dict):
        raise MalformedFragment("tool_call fragment input must be an object.")
    info = ToolInfo(
        id=tool_id,
        tool=tool_name,
        delta=delta,
        input=final_input,
        done=bool(payload.get("done", False)),
        requires_confirmation=bool(payload.get("requires_confirmation", False)),
    )
    return ParsedChunk(kind="tool_call", content=delta, done=info.done, tool_info=info)


def _parse_tool_result(payload: dict[str, Any]) -> ParsedChunk:
    tool_id = _require_str(payload, "id")
    error = payload.get("error")
    if error is not None and not isinstance(error, str):
        error = str(error)
    duration = payload.get("duration_ms")
    if duration is not None and not isinstance(duration, int):
        raise MalformedFragment("tool_result duration_ms must be an integer.")
    info = ToolResultInfo(
        id=tool_id,
        result=payload.get("result"),
        success=payload.get("success", True) is not False,
        error=error,
        duration_ms=duration,
    )
    return ParsedChunk(kind="tool_result", done=True, tool_result=info)


def classify(fragment: StreamFragment) -> ParsedChunk:
    """Classify a fragment, raising ``MalformedFragment`` when it is unusable."""
    if not isinstance(fragment.payload, dict):
        raise MalformedFragment("Fragment payload must be an object.")
    kind = fragment.kind
    if kind in ("text", "thinking"):
        return _parse_text(kind, fragment.payload)
    if kind == "tool_call":
        return _parse_tool_call(fragment.payload)
    if kind == "tool_result":
        return _parse_tool_result(fragment.payload)
    raise MalformedFragment(f"Unknown fragment kind {kind!r}.")


def parse_fragment(fragment: StreamFragment) -> ParsedChunk | None:
    """Classify a fragment; malformed fragments are logged and dropped."""
    try:
        return classify(fragment)
    except MalformedFragment as exc:
        LOGGER.warning(
            "stream.fragment.malformed",
            extra={
                "event": "stream.fragment.malformed",
                "session_id": fragment.session_id,
                "turn_id": fragment.turn_id,
                "round_id": fragment.round_id,
                "kind": fragment.kind,
                "reason": str(exc),
            },
        )
        return None
