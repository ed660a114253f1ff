"""Incremental, failure-tolerant JSON parsing for streamed tool parameters.

Tool call arguments arrive as a sequence of raw text deltas. Until the final
delta is received the accumulated buffer is usually not valid JSON, so the
parser keeps a best-effort view (``partial``) of the object parsed so far and
an explicit state that callers can query instead of guessing.

Bracket and string state is tracked one delta at a time, so feeding costs
only the size of the delta; best-effort parses of the whole buffer are
spaced out as the buffer grows.
"""

from __future__ import annotations

from copy import deepcopy
from enum import Enum
import json
import logging
import re
from typing import Any

LOGGER = logging.getLogger(__name__)

# Minimum buffer growth between partial parses while no value completes.
PARTIAL_PARSE_STEP = 512

# A partial parse waits until the buffer grew by this fraction of its size.
PARTIAL_PARSE_GROWTH_DIVISOR = 4

_STRING_SPECIAL = re.compile(r'["\\]')


class ParseState(str, Enum):
    """Lifecycle of a streamed parameter buffer."""

    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    PARSED = "parsed"
    FAILED = "failed"


class JsonPrefixScanner:
    """Open brackets and string flags at the end of a JSON prefix.

    ``safe_end`` is the length of the longest prefix seen so far that becomes
    valid JSON once its brackets (``safe_stack``) are closed: just after an
    opening or closing bracket, or just before a separating comma.
    """

    def __init__(self) -> None:
        self.stack: list[str] = []
        self.in_string = False
        self.escape = False
        self.length = 0
        self.safe_end = 0
        self.safe_stack: tuple[str, ...] = ()

    def advance(self, delta: str) -> bool:
        """Consume ``delta``; return True when it completed a string, member or container."""
        boundary = False
        position = 0
        size = len(delta)
        while position < size:
            if self.in_string:
                if self.escape:
                    self.escape = False
                    position += 1
                    continue
                match = _STRING_SPECIAL.search(delta, position)
                if match is None:
                    break
                position = match.start()
                if delta[position] == "\\":
                    self.escape = True
                else:
                    self.in_string = False
                    boundary = True
                position += 1
                continue

            char = delta[position]
            if char == '"':
                self.in_string = True
            elif char in "{[":
                self.stack.append(char)
                self._mark(self.length + position + 1)
            elif char in "}]":
                if self.stack:
                    self.stack.pop()
                self._mark(self.length + position + 1)
                boundary = True
            elif char == ",":
                self._mark(self.length + position)
                boundary = True
            position += 1
        self.length += size
        return boundary

    def _mark(self, end: int) -> None:
        self.safe_end = end
        self.safe_stack = tuple(self.stack)


def _closed(prefix: str, stack: list[str] | tuple[str, ...], in_string: bool, escape: bool) -> str:
    """Close any open string, array and object at the end of ``prefix``."""
    candidate = prefix
    if in_string:
        if escape:
            candidate = candidate[:-1]
        candidate += '"'
    else:
        candidate = candidate.rstrip()
        if candidate.endswith(","):
            candidate = candidate[:-1]
    closers = "".join("}" if opener == "{" else "]" for opener in reversed(stack))
    return candidate + closers


def _parse_prefix(text: str, scanner: JsonPrefixScanner) -> Any | None:
    if not text.strip():
        return None
    candidates = [_closed(text, scanner.stack, scanner.in_string, scanner.escape)]
    if scanner.safe_end:
        candidates.append(_closed(text[: scanner.safe_end], scanner.safe_stack, False, False))
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def parse_partial_json(text: str) -> Any | None:
    """Parse possibly-truncated JSON text; return ``None`` when nothing usable exists."""
    scanner = JsonPrefixScanner()
    scanner.advance(text)
    return _parse_prefix(text, scanner)


class IncrementalJsonParser:
    """Accumulate streamed JSON text and expose the last good partial object."""

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._scanner = JsonPrefixScanner()
        self._parsed_length = 0
        self._state = ParseState.EMPTY
        self._partial: dict[str, Any] = {}
        self._value: dict[str, Any] | None = None
        self._last_parse_ok = False

    @property
    def state(self) -> ParseState:
        return self._state

    @property
    def buffer(self) -> str:
        if len(self._chunks) > 1:
            self._chunks = ["".join(self._chunks)]
        return self._chunks[0] if self._chunks else ""

    @property
    def partial(self) -> dict[str, Any]:
        """Return a copy of the last successfully parsed partial object."""
        return deepcopy(self._partial)

    @property
    def value(self) -> dict[str, Any] | None:
        """Return the final parsed object once the buffer is finished."""
        return deepcopy(self._value)

    @property
    def last_parse_ok(self) -> bool:
        """Whether the most recent partial parse (or finish) produced a usable object."""
        return self._last_parse_ok

    def _parse_due(self, boundary: bool) -> bool:
        if not self._parsed_length:
            return True
        length = self._scanner.length
        growth = length - self._parsed_length
        if growth < length // PARTIAL_PARSE_GROWTH_DIVISOR:
            return False
        return boundary or growth >= PARTIAL_PARSE_STEP

    def feed(self, delta: str) -> dict[str, Any]:
        """Append a delta and refresh the best-effort partial object when one is due."""
        if self._state in (ParseState.PARSED, ParseState.FAILED):
            LOGGER.debug(
                "params.feed_after_finish",
                extra={"event": "params.feed_after_finish", "state": self._state.value},
            )
            return self.partial
        if not delta:
            return self.partial

        self._chunks.append(delta)
        self._state = ParseState.ACCUMULATING
        boundary = self._scanner.advance(delta)
        if not self._parse_due(boundary):
            return self.partial

        self._parsed_length = self._scanner.length
        candidate = _parse_prefix(self.buffer, self._scanner)
        if isinstance(candidate, dict):
            self._partial = candidate
            self._last_parse_ok = True
        else:
            self._last_parse_ok = False
        return self.partial

    def finish(self, final_input: dict[str, Any] | None = None) -> dict[str, Any]:
        """Parse the complete buffer (or accept an explicit final object).

        On failure the state becomes ``FAILED`` and the last good partial
        object is returned so callers always have something to show.
        """
        if self._state in (ParseState.PARSED, ParseState.FAILED):
            return deepcopy(self._value) if self._value is not None else self.partial

        if final_input is not None:
            self._value = deepcopy(final_input)
            self._state = ParseState.PARSED
            self._last_parse_ok = True
            return deepcopy(self._value)

        text = self.buffer.strip()
        if not text:
            self._value = {}
            self._state = ParseState.PARSED
            self._last_parse_ok = True
            return {}

        try:
            parsed = json.loads(text)
        except ValueError as exc:
            LOGGER.warning(
                "params.parse_failed",
                extra={
                    "event": "params.parse_failed",
                    "buffer_length": self._scanner.length,
                    "error": str(exc),
                },
            )
            parsed = None

        if isinstance(parsed, dict):
            self._value = parsed
            self._state = ParseState.PARSED
            self._last_parse_ok = True
            return deepcopy(parsed)

        # The stream ended; fall back to the best prefix of what arrived.
        candidate = _parse_prefix(self.buffer, self._scanner)
        if isinstance(candidate, dict):
            self._partial = candidate
        self._state = ParseState.FAILED
        self._last_parse_ok = False
        self._value = None
        return self.partial
