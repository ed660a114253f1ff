"""Turn parsed chunks into stateful flow items inside a model round.

The builder mutates only the round it is handed; the Session Manager is the
single caller, so every change still flows through its write path.
"""

from __future__ import annotations

import logging

from ..models import (
    AnyFlowItem,
    ItemStatus,
    ModelRound,
    TextItem,
    ThinkingItem,
    ToolCall,
    ToolItem,
    ToolResult,
    new_id,
    now_ms,
)
from ..state import can_transition_tool, is_terminal_item
from .chunk_parser import ParsedChunk, ToolInfo, ToolResultInfo

LOGGER = logging.getLogger(__name__)


def find_item(model_round: ModelRound, item_id: str) -> AnyFlowItem | None:
    for item in model_round.items:
        if item.id == item_id:
            return item
    return None


def _close_streaming(item: TextItem | ThinkingItem, status: ItemStatus) -> None:
    item.is_streaming = False
    item.status = status


class FlowItemBuilder:
    """Apply parsed chunks to a round.

    Responsibilities:
    - Text and thinking accumulation into the currently-open item
    - Tool call creation and incremental parameter parsing
    - Tool result attachment with terminal status transitions
    - Closing or cancelling open items at round boundaries
    """

    def apply(self, model_round: ModelRound, chunk: ParsedChunk) -> AnyFlowItem | None:
        """Route a chunk by kind; returns the item that changed, if any."""
        if chunk.kind == "text":
            return self.handle_text(model_round, chunk.content, chunk.done)
        if chunk.kind == "thinking":
            return self.handle_thinking(model_round, chunk.content, chunk.done)
        if chunk.kind == "tool_call" and chunk.tool_info is not None:
            return self.handle_tool_call(model_round, chunk.tool_info)
        if chunk.kind == "tool_result" and chunk.tool_result is not None:
            return self.handle_tool_result(model_round, chunk.tool_result)
        return None

    def handle_text(self, model_round: ModelRound, text: str, done: bool = False) -> TextItem | None:
        self._close_open(model_round, ThinkingItem)
        return self._append(model_round, TextItem, text, done)

    def handle_thinking(
        self, model_round: ModelRound, text: str, done: bool = False
    ) -> ThinkingItem | None:
        self._close_open(model_round, TextItem)
        return self._append(model_round, ThinkingItem, text, done)

    def handle_tool_call(self, model_round: ModelRound, info: ToolInfo) -> ToolItem | None:
        existing = find_item(model_round, info.id)
        if existing is not None and not isinstance(existing, ToolItem):
            LOGGER.warning(
                "stream.tool_call.id_conflict",
                extra={"event": "stream.tool_call.id_conflict", "item_id": info.id},
            )
            return None

        item = existing
        if item is None:
            self._close_open(model_round, TextItem)
            self._close_open(model_round, ThinkingItem)
            item = ToolItem(
                id=info.id,
                status=ItemStatus.STREAMING,
                tool_name=info.tool,
                tool_call=ToolCall(id=info.id),
                is_params_streaming=True,
                partial_params={},
                start_time=now_ms(),
            )
            model_round.items.append(item)
        elif not item.is_params_streaming:
            LOGGER.debug(
                "stream.tool_call.after_params_done",
                extra={"event": "stream.tool_call.after_params_done", "tool_id": info.id},
            )
            return item

        if info.tool and not item.tool_name:
            item.tool_name = info.tool
        if info.delta:
            item.partial_params = item.params_parser.feed(info.delta)

        if info.done:
            item.tool_call.input = item.params_parser.finish(info.input)
            item.is_params_streaming = False
            item.partial_params = None
            if info.requires_confirmation:
                item.requires_confirmation = True
                item.status = ItemStatus.PENDING_CONFIRMATION
            else:
                item.status = ItemStatus.PENDING
        return item

    def handle_tool_result(
        self, model_round: ModelRound, info: ToolResultInfo
    ) -> ToolItem | None:
        item = find_item(model_round, info.id)
        if not isinstance(item, ToolItem):
            LOGGER.warning(
                "stream.tool_result.unknown_tool",
                extra={"event": "stream.tool_result.unknown_tool", "tool_id": info.id},
            )
            return None

        failed = info.success is False or bool(info.error)
        target = ItemStatus.ERROR if failed else ItemStatus.COMPLETED
        if not can_transition_tool(item.status, target):
            LOGGER.warning(
                "stream.tool_result.dropped",
                extra={
                    "event": "stream.tool_result.dropped",
                    "tool_id": info.id,
                    "status": item.status.value,
                },
            )
            return None

        if item.is_params_streaming:
            item.tool_call.input = item.params_parser.finish()
            item.is_params_streaming = False
            item.partial_params = None
        # Status first: a result is never visible on a non-terminal tool.
        item.status = target
        item.end_time = now_ms()
        item.tool_result = ToolResult(
            result=info.result,
            success=not failed,
            error=info.error,
            duration_ms=info.duration_ms,
        )
        return item

    def close_open_items(self, model_round: ModelRound) -> None:
        """Complete open text/thinking items and finish streaming tool parameters.

        Tool calls are left to the executor: a call whose parameters were
        still streaming is parsed from what arrived and becomes ``pending``.
        """
        for item in model_round.items:
            if isinstance(item, (TextItem, ThinkingItem)) and item.is_streaming:
                _close_streaming(item, ItemStatus.COMPLETED)
            elif isinstance(item, ToolItem) and item.status in (
                ItemStatus.PREPARING,
                ItemStatus.STREAMING,
            ):
                item.tool_call.input = item.params_parser.finish()
                item.is_params_streaming = False
                item.partial_params = None
                item.status = ItemStatus.PENDING

    def cancel_open_items(self, model_round: ModelRound) -> None:
        """Cancel every non-terminal item; completed items are left untouched."""
        for item in model_round.items:
            if is_terminal_item(item.status):
                continue
            if isinstance(item, (TextItem, ThinkingItem)):
                _close_streaming(item, ItemStatus.CANCELLED)
            elif isinstance(item, ToolItem):
                self._settle_tool(item, ItemStatus.CANCELLED)
            else:
                item.status = ItemStatus.CANCELLED

    def _settle_tool(self, item: ToolItem, status: ItemStatus) -> None:
        if item.is_params_streaming:
            item.tool_call.input = item.params_parser.finish()
            item.is_params_streaming = False
            item.partial_params = None
        item.status = status
        item.end_time = now_ms()

    def _open_item(
        self, model_round: ModelRound, item_type: type[TextItem] | type[ThinkingItem]
    ) -> TextItem | ThinkingItem | None:
        for item in reversed(model_round.items):
            if isinstance(item, item_type) and item.is_streaming:
                return item
        return None

    def _close_open(
        self, model_round: ModelRound, item_type: type[TextItem] | type[ThinkingItem]
    ) -> None:
        item = self._open_item(model_round, item_type)
        if item is not None:
            _close_streaming(item, ItemStatus.COMPLETED)

    def _append(self, model_round, item_type, text: str, done: bool):
        item = self._open_item(model_round, item_type)
        if item is None:
            if not text:
                return None
            prefix = "text" if item_type is TextItem else "thinking"
            item = item_type(id=new_id(prefix), status=ItemStatus.STREAMING)
            model_round.items.append(item)
        item.content += text
        if done:
            _close_streaming(item, ItemStatus.COMPLETED)
        return item
