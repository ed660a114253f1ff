"""Status rules for sessions, turns, rounds and tool items.

Every status question asked anywhere in the package is answered here, from
the owned state alone, so consumers never compare status strings ad hoc.
"""

from __future__ import annotations

from .models import (
    DialogTurn,
    ItemStatus,
    ModelRound,
    RoundStatus,
    Session,
    SessionStatus,
    ToolItem,
    TurnStatus,
)

TERMINAL_TURN_STATUSES: frozenset[TurnStatus] = frozenset(
    {TurnStatus.COMPLETED, TurnStatus.CANCELLED, TurnStatus.ERROR}
)

TERMINAL_ROUND_STATUSES: frozenset[RoundStatus] = frozenset(
    {RoundStatus.COMPLETED, RoundStatus.CANCELLED, RoundStatus.ERROR}
)

TERMINAL_ITEM_STATUSES: frozenset[ItemStatus] = frozenset(
    {
        ItemStatus.COMPLETED,
        ItemStatus.CANCELLED,
        ItemStatus.ERROR,
        ItemStatus.REJECTED,
    }
)

# Tool items that hold a round open after the round's end event arrived.
# Tools run after the model finishes streaming, so pending ones still count.
AWAITING_TOOL_STATUSES: frozenset[ItemStatus] = frozenset(
    {
        ItemStatus.PREPARING,
        ItemStatus.STREAMING,
        ItemStatus.PENDING,
        ItemStatus.PENDING_CONFIRMATION,
        ItemStatus.CONFIRMED,
        ItemStatus.RUNNING,
    }
)

TOOL_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PREPARING: frozenset(
        {
            ItemStatus.STREAMING,
            ItemStatus.PENDING,
            ItemStatus.PENDING_CONFIRMATION,
            ItemStatus.RUNNING,
            ItemStatus.COMPLETED,
            ItemStatus.ERROR,
            ItemStatus.CANCELLED,
        }
    ),
    ItemStatus.STREAMING: frozenset(
        {
            ItemStatus.PENDING,
            ItemStatus.PENDING_CONFIRMATION,
            ItemStatus.RUNNING,
            ItemStatus.COMPLETED,
            ItemStatus.ERROR,
            ItemStatus.CANCELLED,
        }
    ),
    ItemStatus.PENDING: frozenset(
        {
            ItemStatus.PENDING_CONFIRMATION,
            ItemStatus.RUNNING,
            ItemStatus.COMPLETED,
            ItemStatus.ERROR,
            ItemStatus.CANCELLED,
        }
    ),
    ItemStatus.PENDING_CONFIRMATION: frozenset(
        {ItemStatus.CONFIRMED, ItemStatus.REJECTED, ItemStatus.CANCELLED}
    ),
    ItemStatus.CONFIRMED: frozenset(
        {
            ItemStatus.RUNNING,
            ItemStatus.COMPLETED,
            ItemStatus.ERROR,
            ItemStatus.CANCELLED,
        }
    ),
    ItemStatus.RUNNING: frozenset(
        {ItemStatus.COMPLETED, ItemStatus.ERROR, ItemStatus.CANCELLED}
    ),
}


def is_terminal_turn(status: TurnStatus) -> bool:
    return status in TERMINAL_TURN_STATUSES


def is_terminal_round(status: RoundStatus) -> bool:
    return status in TERMINAL_ROUND_STATUSES


def is_terminal_item(status: ItemStatus) -> bool:
    return status in TERMINAL_ITEM_STATUSES


def can_transition_tool(current: ItemStatus, target: ItemStatus) -> bool:
    """Return True when a tool item may move from ``current`` to ``target``."""
    return target in TOOL_TRANSITIONS.get(current, frozenset())


def round_is_blocked(model_round: ModelRound) -> bool:
    """Whether a tool in the round still waits on confirmation or execution."""
    return any(
        isinstance(item, ToolItem) and item.status in AWAITING_TOOL_STATUSES
        for item in model_round.items
    )


def round_has_pending_confirmation(model_round: ModelRound) -> bool:
    return any(
        isinstance(item, ToolItem) and item.status == ItemStatus.PENDING_CONFIRMATION
        for item in model_round.items
    )


def final_turn_status(turn: DialogTurn) -> TurnStatus:
    """Final status of a finished turn: the status of its last round.

    A round that failed earlier in the turn is superseded by a later round
    that completes, which is how tool-use loops recover from a bad call.
    """
    if not turn.model_rounds:
        return TurnStatus.COMPLETED
    last = turn.model_rounds[-1].status
    if last == RoundStatus.ERROR:
        return TurnStatus.ERROR
    if last == RoundStatus.CANCELLED:
        return TurnStatus.CANCELLED
    return TurnStatus.COMPLETED


def most_recent_turn(session: Session) -> DialogTurn | None:
    """Return the most recently touched turn (later position wins ties)."""
    latest: DialogTurn | None = None
    for turn in session.dialog_turns:
        if latest is None or turn.touched_at >= latest.touched_at:
            latest = turn
    return latest


def derive_session_status(session: Session, active_session_id: str | None) -> SessionStatus:
    """Compute a session's status from owned state only."""
    if session.session_id == active_session_id:
        return SessionStatus.ACTIVE
    latest = most_recent_turn(session)
    if latest is not None and latest.status == TurnStatus.ERROR:
        return SessionStatus.ERROR
    return SessionStatus.IDLE
