"""JSON-friendly encoding of inbound events and session trees.

Recorded event logs are JSON Lines, one object per inbound event, with a
``type`` key naming the event class and snake_case fields::

    {"type": "TurnStarted", "session_id": "s1", "turn_id": "t1",
     "user_message": {"id": "u1", "content": "hi"}}
"""

from __future__ import annotations

from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any

from ..exceptions import MalformedFragment
from ..models import ImageContext, Session, UserMessage
from .inbound import INBOUND_EVENT_TYPES, ImageAnalysisStarted, InboundEvent, TurnStarted

_EVENT_TYPES: dict[str, type] = {cls.__name__: cls for cls in INBOUND_EVENT_TYPES}


def decode_event(record: dict[str, Any]) -> InboundEvent:
    """Build an inbound event from its recorded form.

    Raises:
        MalformedFragment: unknown ``type`` or fields that do not fit it
    """
    if not isinstance(record, dict):
        raise MalformedFragment(f"Event record must be an object, got {type(record).__name__}")
    data = dict(record)
    type_name = data.pop("type", None)
    event_cls = _EVENT_TYPES.get(type_name) if isinstance(type_name, str) else None
    if event_cls is None:
        raise MalformedFragment(f"Unknown event type: {type_name!r}")

    try:
        if event_cls is TurnStarted:
            message = data.get("user_message")
            if not isinstance(message, dict):
                raise MalformedFragment("TurnStarted requires a user_message object")
            data["user_message"] = UserMessage(**message)
        elif event_cls is ImageAnalysisStarted:
            data["images"] = tuple(ImageContext(**image) for image in data.get("images", []))
        return event_cls(**data)
    except TypeError as exc:
        raise MalformedFragment(f"Invalid fields for {type_name}: {exc}") from exc


def encode_event(event: InboundEvent) -> dict[str, Any]:
    return {"type": type(event).__name__, **to_jsonable(event)}


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and containers to plain JSON values.

    Fields declared with ``repr=False`` hold runtime machinery (parsers) and
    are skipped.
    """
    if is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name)) for f in fields(value) if f.repr
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def encode_session(session: Session) -> dict[str, Any]:
    return to_jsonable(session)
