"""Session manager: sole owner of the Session -> Turn -> Round -> Item tree.

Every mutation of conversation state happens in ``apply_event`` through a
named inbound event, so each transition is auditable and a recorded event log
replays to the same tree. Readers get deep copies.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from copy import deepcopy
from dataclasses import dataclass
from itertools import count
import logging
from typing import Any

from .events.bus import EventBus
from .events.domain import (
    SESSION_CREATED,
    SESSION_DELETED,
    SESSION_SWITCHED,
    SESSION_UPDATED,
    TURN_FINISHED,
    TurnFinishedEvent,
)
from .events.inbound import (
    INBOUND_EVENT_TYPES,
    ImageAnalysisFinished,
    ImageAnalysisStarted,
    InboundEvent,
    RoundCancelled,
    RoundEnded,
    RoundStarted,
    StreamFragment,
    TokenUsageUpdated,
    ToolConfirmationRequired,
    ToolConfirmed,
    ToolFailed,
    ToolRejected,
    ToolStarted,
    TurnCancelled,
    TurnCancelRequested,
    TurnEnded,
    TurnFailed,
    TurnStarted,
)
from .exceptions import (
    FlowChatError,
    InvalidToolTransition,
    UnknownSession,
    UnknownTool,
    UnknownTurn,
)
from .models import (
    DialogTurn,
    ImageAnalysisItem,
    ImageAnalysisPhase,
    ItemStatus,
    ModelRound,
    RoundStatus,
    Session,
    SessionConfig,
    SessionStatus,
    TokenUsage,
    ToolItem,
    ToolResult,
    TurnStatus,
    new_id,
    now_ms,
)
from .state import (
    can_transition_tool,
    derive_session_status,
    final_turn_status,
    is_terminal_item,
    is_terminal_round,
    is_terminal_turn,
    round_has_pending_confirmation,
    round_is_blocked,
)
from .stream.chunk_parser import parse_fragment
from .stream.item_builder import FlowItemBuilder, find_item

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolLocation:
    session_id: str
    turn_id: str
    round_id: str
    status: ItemStatus


class SessionManager:
    """Own every session and route inbound events to session, turn and round.

    Events for background sessions are applied exactly like events for the
    active one; ``active_session_id`` only tracks UI focus.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        default_mode: str = "agentic",
        max_context_tokens: int | None = None,
    ) -> None:
        self.bus = bus or EventBus()
        self.default_mode = default_mode
        self.max_context_tokens = max_context_tokens
        self._sessions: dict[str, Session] = {}
        self._active_session_id: str | None = None
        self._builder = FlowItemBuilder()
        self._clock = count(1)
        self._handlers: dict[type, Callable[[Any], None]] = {
            TurnStarted: self._on_turn_started,
            ImageAnalysisStarted: self._on_image_analysis_started,
            ImageAnalysisFinished: self._on_image_analysis_finished,
            RoundStarted: self._on_round_started,
            StreamFragment: self._on_fragment,
            ToolConfirmationRequired: self._on_tool_confirmation_required,
            ToolConfirmed: self._on_tool_confirmed,
            ToolRejected: self._on_tool_rejected,
            ToolStarted: self._on_tool_started,
            ToolFailed: self._on_tool_failed,
            RoundEnded: self._on_round_ended,
            RoundCancelled: self._on_round_cancelled,
            TurnEnded: self._on_turn_ended,
            TurnFailed: self._on_turn_failed,
            TurnCancelRequested: self._on_turn_cancel_requested,
            TurnCancelled: self._on_turn_cancelled,
            TokenUsageUpdated: self._on_token_usage,
        }
        missing = [t.__name__ for t in INBOUND_EVENT_TYPES if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for inbound events: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Session lifecycle and read access
    # ------------------------------------------------------------------

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create_session(
        self,
        session_id: str | None = None,
        *,
        config: SessionConfig | None = None,
        title: str | None = None,
        activate: bool = True,
    ) -> Session:
        """Register a session (idempotent for an existing id) and return a copy."""
        sid = session_id or new_id("session")
        session = self._sessions.get(sid)
        if session is None:
            cfg = config or SessionConfig(mode=self.default_mode)
            session = Session(
                session_id=sid,
                config=cfg,
                title=title,
                mode=cfg.mode,
                max_context_tokens=self.max_context_tokens,
            )
            self._sessions[sid] = session
            LOGGER.info(
                "session.created",
                extra={"event": "session.created", "session_id": sid, "mode": cfg.mode},
            )
            self.bus.publish_nowait(SESSION_CREATED, {"sessionId": sid})
        if activate:
            self.switch_session(sid)
        return deepcopy(session)

    def delete_session(self, session_id: str) -> None:
        """Drop a session on explicit user action."""
        self._session(session_id)
        del self._sessions[session_id]
        if self._active_session_id == session_id:
            self._active_session_id = None
        LOGGER.info(
            "session.deleted", extra={"event": "session.deleted", "session_id": session_id}
        )
        self.bus.publish_nowait(SESSION_DELETED, {"sessionId": session_id})

    def switch_session(self, session_id: str) -> None:
        """Move UI focus to another session; turn data is not touched."""
        self._session(session_id)
        if self._active_session_id == session_id:
            return
        previous = self._active_session_id
        self._active_session_id = session_id
        self.bus.publish_nowait(
            SESSION_SWITCHED, {"sessionId": session_id, "previousSessionId": previous}
        )

    def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return deepcopy(session) if session is not None else None

    def list_sessions(self) -> list[Session]:
        return [deepcopy(session) for session in self._sessions.values()]

    def derive_status(self, session: Session) -> SessionStatus:
        return derive_session_status(session, self._active_session_id)

    def session_status(self, session_id: str) -> SessionStatus:
        return self.derive_status(self._session(session_id))

    def turn_count(self, session_id: str) -> int:
        return len(self._session(session_id).dialog_turns)

    def turn_index(self, session_id: str, turn_id: str) -> int:
        session = self._session(session_id)
        for index, turn in enumerate(session.dialog_turns):
            if turn.id == turn_id:
                return index
        raise UnknownTurn(session_id, turn_id)

    def get_turn(self, session_id: str, turn_id: str) -> DialogTurn | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        for turn in session.dialog_turns:
            if turn.id == turn_id:
                return deepcopy(turn)
        return None

    def locate_tool(self, tool_id: str) -> ToolLocation | None:
        """Find which session, turn and round hold a tool item (newest first)."""
        for session in self._sessions.values():
            for turn in reversed(session.dialog_turns):
                for model_round in reversed(turn.model_rounds):
                    item = find_item(model_round, tool_id)
                    if isinstance(item, ToolItem):
                        return ToolLocation(
                            session_id=session.session_id,
                            turn_id=turn.id,
                            round_id=model_round.id,
                            status=item.status,
                        )
        return None

    def get_tool(self, tool_id: str) -> ToolItem | None:
        location = self.locate_tool(tool_id)
        if location is None:
            return None
        turn = self._turn(self._session(location.session_id), location.turn_id)
        _, item = self._find_tool(turn, tool_id)
        return deepcopy(item)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def apply_event(self, event: InboundEvent) -> None:
        """Apply one inbound event.

        Raises:
            UnknownSession, UnknownTurn, UnknownTool, InvalidToolTransition:
                the event references state that does not exist (or cannot
                take the change); it is dropped and logged, and the session
                is left as it was.
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")
        try:
            handler(event)
        except (UnknownSession, UnknownTurn, UnknownTool, InvalidToolTransition) as exc:
            LOGGER.warning(
                "session.event.dropped",
                extra={
                    "event": "session.event.dropped",
                    "event_type": type(event).__name__,
                    "session_id": getattr(event, "session_id", None),
                    "turn_id": getattr(event, "turn_id", None),
                    "reason": str(exc),
                },
            )
            raise
        self.bus.publish_nowait(
            SESSION_UPDATED,
            {
                "sessionId": event.session_id,
                "turnId": getattr(event, "turn_id", None),
                "eventType": type(event).__name__,
            },
        )

    def apply_events(self, events: Iterable[InboundEvent]) -> int:
        """Apply events in order, dropping those that fail routing; returns applied count."""
        applied = 0
        for event in events:
            try:
                self.apply_event(event)
            except FlowChatError:
                continue
            applied += 1
        return applied

    def request_cancel(self, session_id: str, turn_id: str) -> bool:
        """Synchronously mark a turn ``cancelling``; returns False if it already finished."""
        turn = self._turn(self._session(session_id), turn_id)
        if is_terminal_turn(turn.status):
            return False
        self.apply_event(TurnCancelRequested(session_id=session_id, turn_id=turn_id))
        return True

    def truncate_turns(self, session_id: str, turn_index: int) -> list[str]:
        """Keep turns ``[0, turn_index]`` and discard the rest; returns removed turn ids."""
        session = self._session(session_id)
        if turn_index < 0 or turn_index >= len(session.dialog_turns):
            raise IndexError(f"Turn index {turn_index} out of range for {session_id}")
        removed = [turn.id for turn in session.dialog_turns[turn_index + 1 :]]
        session.dialog_turns = session.dialog_turns[: turn_index + 1]
        session.last_active_at = now_ms()
        LOGGER.info(
            "session.truncated",
            extra={
                "event": "session.truncated",
                "session_id": session_id,
                "turn_index": turn_index,
                "removed_turns": len(removed),
            },
        )
        self.bus.publish_nowait(
            SESSION_UPDATED, {"sessionId": session_id, "turnId": None, "eventType": "Truncated"}
        )
        return removed

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def _session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def _turn(self, session: Session, turn_id: str) -> DialogTurn:
        for turn in session.dialog_turns:
            if turn.id == turn_id:
                return turn
        raise UnknownTurn(session.session_id, turn_id)

    def _locate(self, event: Any) -> tuple[Session, DialogTurn]:
        session = self._session(event.session_id)
        turn = self._turn(session, event.turn_id)
        turn.touched_at = next(self._clock)
        session.last_active_at = now_ms()
        return session, turn

    def _find_round(self, turn: DialogTurn, round_id: str) -> ModelRound | None:
        for model_round in turn.model_rounds:
            if model_round.id == round_id:
                return model_round
        return None

    def _find_tool(self, turn: DialogTurn, tool_id: str) -> tuple[ModelRound, ToolItem]:
        for model_round in turn.model_rounds:
            item = find_item(model_round, tool_id)
            if isinstance(item, ToolItem):
                return model_round, item
        raise UnknownTool(tool_id)

    def _drop(self, reason: str, event: Any, **fields: Any) -> None:
        LOGGER.debug(
            reason,
            extra={
                "event": reason,
                "event_type": type(event).__name__,
                "session_id": getattr(event, "session_id", None),
                "turn_id": getattr(event, "turn_id", None),
                **fields,
            },
        )

    # ------------------------------------------------------------------
    # Turn handlers
    # ------------------------------------------------------------------

    def _on_turn_started(self, event: TurnStarted) -> None:
        session = self._session(event.session_id)
        session.last_active_at = now_ms()
        for turn in session.dialog_turns:
            if turn.id != event.turn_id:
                continue
            # Retried sends reuse the optimistic local turn instead of adding one.
            if not turn.model_rounds and turn.status in (TurnStatus.PENDING, TurnStatus.ERROR):
                turn.status = TurnStatus.PENDING
                turn.end_time = None
                turn.error = None
                turn.end_requested = False
                turn.touched_at = next(self._clock)
                LOGGER.info(
                    "turn.reconciled",
                    extra={
                        "event": "turn.reconciled",
                        "session_id": session.session_id,
                        "turn_id": turn.id,
                    },
                )
            else:
                self._drop("turn.duplicate_ignored", event)
            return

        session.dialog_turns.append(
            DialogTurn(
                id=event.turn_id,
                session_id=session.session_id,
                user_message=event.user_message,
                touched_at=next(self._clock),
            )
        )
        session.error = None
        LOGGER.info(
            "turn.started",
            extra={
                "event": "turn.started",
                "session_id": session.session_id,
                "turn_id": event.turn_id,
                "turn_index": len(session.dialog_turns) - 1,
            },
        )

    def _on_image_analysis_started(self, event: ImageAnalysisStarted) -> None:
        _, turn = self._locate(event)
        if turn.status != TurnStatus.PENDING:
            self._drop("turn.image_analysis.ignored", event, status=turn.status.value)
            return
        turn.image_analysis_phase = ImageAnalysisPhase(
            items=[
                ImageAnalysisItem(
                    id=image.id, status=ItemStatus.ANALYZING, image_context=image
                )
                for image in event.images
            ]
        )
        turn.status = TurnStatus.IMAGE_ANALYZING

    def _on_image_analysis_finished(self, event: ImageAnalysisFinished) -> None:
        _, turn = self._locate(event)
        phase = turn.image_analysis_phase
        if phase is None:
            self._drop("turn.image_analysis.no_phase", event)
            return
        item = next((i for i in phase.items if i.id == event.image_id), None)
        if item is None or is_terminal_item(item.status):
            self._drop("turn.image_analysis.unknown_image", event, image_id=event.image_id)
            return
        if event.error:
            item.status = ItemStatus.ERROR
            item.error = event.error
        else:
            item.status = ItemStatus.COMPLETED
            item.result = dict(event.result or {})
        if all(is_terminal_item(i.status) for i in phase.items):
            failed = all(i.status == ItemStatus.ERROR for i in phase.items)
            phase.status = "error" if failed else "completed"
            phase.end_time = now_ms()

    def _on_turn_ended(self, event: TurnEnded) -> None:
        session, turn = self._locate(event)
        if is_terminal_turn(turn.status):
            self._drop("turn.end.after_terminal", event)
            return
        turn.end_requested = True
        self._settle_turn(session, turn)

    def _on_turn_failed(self, event: TurnFailed) -> None:
        session, turn = self._locate(event)
        if is_terminal_turn(turn.status):
            self._drop("turn.failed.after_terminal", event)
            return
        for model_round in turn.model_rounds:
            if is_terminal_round(model_round.status):
                continue
            self._builder.cancel_open_items(model_round)
            self._end_round(model_round, RoundStatus.ERROR, event.error)
        turn.error = event.error
        session.error = event.error
        self._finish_turn(session, turn, TurnStatus.ERROR)

    def _on_turn_cancel_requested(self, event: TurnCancelRequested) -> None:
        session, turn = self._locate(event)
        if is_terminal_turn(turn.status) or turn.status == TurnStatus.CANCELLING:
            return
        turn.status = TurnStatus.CANCELLING
        LOGGER.info(
            "turn.cancelling",
            extra={
                "event": "turn.cancelling",
                "session_id": session.session_id,
                "turn_id": turn.id,
                "open_rounds": sum(
                    1 for r in turn.model_rounds if not is_terminal_round(r.status)
                ),
            },
        )
        self._settle_turn(session, turn)

    def _on_turn_cancelled(self, event: TurnCancelled) -> None:
        session, turn = self._locate(event)
        if is_terminal_turn(turn.status):
            return
        for model_round in turn.model_rounds:
            if not is_terminal_round(model_round.status):
                self._builder.cancel_open_items(model_round)
                self._end_round(model_round, RoundStatus.CANCELLED)
        self._finish_turn(session, turn, TurnStatus.CANCELLED)

    def _on_token_usage(self, event: TokenUsageUpdated) -> None:
        session, turn = self._locate(event)
        total = event.total_tokens
        if total is None:
            total = event.input_tokens + event.output_tokens
        usage = TokenUsage(
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens,
            total_tokens=total,
        )
        turn.token_usage = usage
        session.current_token_usage = deepcopy(usage)

    # ------------------------------------------------------------------
    # Round handlers
    # ------------------------------------------------------------------

    def _on_round_started(self, event: RoundStarted) -> None:
        _, turn = self._locate(event)
        if is_terminal_turn(turn.status) or turn.status == TurnStatus.CANCELLING:
            self._drop("round.start.ignored", event, status=turn.status.value)
            return
        if self._find_round(turn, event.round_id) is not None:
            return
        self._open_round(turn, event.round_id, event.index)

    def _open_round(self, turn: DialogTurn, round_id: str, index: int | None) -> ModelRound:
        last_index = turn.model_rounds[-1].index if turn.model_rounds else -1
        if index is None:
            index = last_index + 1
        elif index <= last_index:
            LOGGER.warning(
                "round.index_not_increasing",
                extra={
                    "event": "round.index_not_increasing",
                    "turn_id": turn.id,
                    "round_id": round_id,
                    "index": index,
                    "last_index": last_index,
                },
            )
            index = last_index + 1
        model_round = ModelRound(id=round_id, index=index)
        turn.model_rounds.append(model_round)
        if turn.status in (TurnStatus.PENDING, TurnStatus.IMAGE_ANALYZING):
            turn.status = TurnStatus.PROCESSING
        return model_round

    def _on_fragment(self, event: StreamFragment) -> None:
        session, turn = self._locate(event)
        if is_terminal_turn(turn.status):
            self._drop("stream.fragment.after_terminal", event, round_id=event.round_id)
            return
        model_round = self._find_round(turn, event.round_id)
        if model_round is None:
            if turn.status == TurnStatus.CANCELLING:
                self._drop("stream.fragment.cancelling", event, round_id=event.round_id)
                return
            model_round = self._open_round(turn, event.round_id, None)
        if is_terminal_round(model_round.status):
            self._drop("stream.fragment.round_closed", event, round_id=event.round_id)
            return

        chunk = parse_fragment(event)
        if chunk is None:
            return
        self._builder.apply(model_round, chunk)
        if chunk.kind in ("tool_call", "tool_result"):
            self._refresh_round(session, turn, model_round)

    def _on_round_ended(self, event: RoundEnded) -> None:
        session, turn = self._locate(event)
        model_round = self._find_round(turn, event.round_id)
        if model_round is None:
            self._drop("round.end.unknown_round", event, round_id=event.round_id)
            return
        if is_terminal_round(model_round.status):
            return
        model_round.end_requested = True
        if event.error:
            self._builder.cancel_open_items(model_round)
            self._end_round(model_round, RoundStatus.ERROR, event.error)
            self._settle_turn(session, turn)
            return
        self._builder.close_open_items(model_round)
        self._refresh_round(session, turn, model_round)

    def _on_round_cancelled(self, event: RoundCancelled) -> None:
        session, turn = self._locate(event)
        model_round = self._find_round(turn, event.round_id)
        if model_round is None:
            self._drop("round.cancel.unknown_round", event, round_id=event.round_id)
            return
        if is_terminal_round(model_round.status):
            return
        self._builder.cancel_open_items(model_round)
        self._end_round(model_round, RoundStatus.CANCELLED)
        self._settle_turn(session, turn)

    # ------------------------------------------------------------------
    # Tool handlers
    # ------------------------------------------------------------------

    def _transition_tool(self, item: ToolItem, target: ItemStatus) -> None:
        if not can_transition_tool(item.status, target):
            raise InvalidToolTransition(
                f"Tool {item.id} cannot move from {item.status.value} to {target.value}"
            )
        item.status = target

    def _on_tool_confirmation_required(self, event: ToolConfirmationRequired) -> None:
        session, turn = self._locate(event)
        model_round, item = self._find_tool(turn, event.tool_id)
        if item.status == ItemStatus.PENDING_CONFIRMATION:
            return
        if item.is_params_streaming:
            item.tool_call.input = item.params_parser.finish()
            item.is_params_streaming = False
            item.partial_params = None
        self._transition_tool(item, ItemStatus.PENDING_CONFIRMATION)
        item.requires_confirmation = True
        self._refresh_round(session, turn, model_round)

    def _on_tool_confirmed(self, event: ToolConfirmed) -> None:
        session, turn = self._locate(event)
        model_round, item = self._find_tool(turn, event.tool_id)
        self._transition_tool(item, ItemStatus.CONFIRMED)
        if event.updated_input is not None:
            item.tool_call.input = deepcopy(event.updated_input)
        item.user_confirmed = True
        self._refresh_round(session, turn, model_round)

    def _on_tool_rejected(self, event: ToolRejected) -> None:
        session, turn = self._locate(event)
        model_round, item = self._find_tool(turn, event.tool_id)
        self._transition_tool(item, ItemStatus.REJECTED)
        item.user_confirmed = False
        item.end_time = now_ms()
        self._refresh_round(session, turn, model_round)

    def _on_tool_started(self, event: ToolStarted) -> None:
        session, turn = self._locate(event)
        model_round, item = self._find_tool(turn, event.tool_id)
        if item.status == ItemStatus.RUNNING:
            return
        if item.is_params_streaming:
            item.tool_call.input = item.params_parser.finish()
            item.is_params_streaming = False
            item.partial_params = None
        self._transition_tool(item, ItemStatus.RUNNING)
        self._refresh_round(session, turn, model_round)

    def _on_tool_failed(self, event: ToolFailed) -> None:
        session, turn = self._locate(event)
        model_round, item = self._find_tool(turn, event.tool_id)
        if is_terminal_item(item.status):
            self._drop("tool.failed.after_terminal", event, status=item.status.value)
            return
        if item.is_params_streaming:
            item.tool_call.input = item.params_parser.finish()
            item.is_params_streaming = False
            item.partial_params = None
        self._transition_tool(item, ItemStatus.ERROR)
        item.end_time = now_ms()
        item.tool_result = ToolResult(success=False, error=event.error)
        self._refresh_round(session, turn, model_round)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _end_round(
        self, model_round: ModelRound, status: RoundStatus, error: str | None = None
    ) -> None:
        model_round.status = status
        model_round.end_time = now_ms()
        if error:
            model_round.error = error

    def _refresh_round(self, session: Session, turn: DialogTurn, model_round: ModelRound) -> None:
        """Re-evaluate a round after one of its tools changed state."""
        if is_terminal_round(model_round.status):
            return
        if round_has_pending_confirmation(model_round):
            model_round.status = RoundStatus.PENDING_CONFIRMATION
            return
        if model_round.end_requested and not round_is_blocked(model_round):
            self._end_round(model_round, RoundStatus.COMPLETED)
            self._settle_turn(session, turn)
            return
        if model_round.status == RoundStatus.PENDING_CONFIRMATION:
            model_round.status = RoundStatus.STREAMING

    def _settle_turn(self, session: Session, turn: DialogTurn) -> None:
        """Finish the turn once every round is terminal and an end (or cancel) was asked."""
        if is_terminal_turn(turn.status):
            return
        if any(not is_terminal_round(r.status) for r in turn.model_rounds):
            return
        if turn.status == TurnStatus.CANCELLING:
            self._finish_turn(session, turn, TurnStatus.CANCELLED)
        elif turn.end_requested:
            self._finish_turn(session, turn, final_turn_status(turn))

    def _finish_turn(self, session: Session, turn: DialogTurn, status: TurnStatus) -> None:
        turn.status = status
        turn.end_time = now_ms()
        if status == TurnStatus.ERROR and turn.error is None:
            turn.error = next(
                (r.error for r in reversed(turn.model_rounds) if r.error), None
            )
        turn_index = session.dialog_turns.index(turn)
        LOGGER.info(
            "turn.finished",
            extra={
                "event": "turn.finished",
                "session_id": session.session_id,
                "turn_id": turn.id,
                "turn_index": turn_index,
                "status": status.value,
                "rounds": len(turn.model_rounds),
            },
        )
        self.bus.publish_nowait(
            TURN_FINISHED,
            TurnFinishedEvent(
                session_id=session.session_id,
                turn_id=turn.id,
                turn_index=turn_index,
                status=status.value,
            ).to_payload(),
        )
