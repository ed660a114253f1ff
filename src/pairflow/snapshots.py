"""Per-turn workspace snapshots and rollback.

Snapshots are requested after every terminal turn and never block or fail
it. A rollback restores the workspace to the state captured at a turn,
truncates the conversation to that turn, and tells subscribers which files
changed on disk.
"""

from __future__ import annotations

import asyncio
import logging

from .events.bus import Event, EventBus
from .events.domain import (
    EDITOR_FILE_CHANGED,
    FILE_TREE_REFRESH,
    ROLLBACK_COMPLETED,
    TURN_FINISHED,
    EditorFileChangedEvent,
    RollbackCompletedEvent,
)
from .exceptions import NoRollbackTarget, SnapshotRestoreFailed
from .interfaces import SnapshotStore
from .models import RollbackResult, TurnSnapshot
from .session_manager import SessionManager
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)


class TurnRollbackCoordinator:
    """Request snapshots on turn completion and serialize rollbacks per session."""

    def __init__(
        self,
        session_manager: SessionManager,
        store: SnapshotStore,
        bus: EventBus,
        task_manager: TaskManager,
        *,
        enabled: bool = True,
    ) -> None:
        self.sessions = session_manager
        self.store = store
        self.bus = bus
        self.tasks = task_manager
        self.enabled = enabled
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_rollback: dict[str, tuple[int, tuple[str, ...]]] = {}
        if enabled:
            bus.subscribe(TURN_FINISHED, self._on_turn_finished)

    def close(self) -> None:
        """Stop requesting snapshots."""
        self.bus.unsubscribe(TURN_FINISHED, self._on_turn_finished)

    def _on_turn_finished(self, event: Event) -> None:
        session_id = event.data["sessionId"]
        turn_index = event.data["turnIndex"]
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning(
                "snapshot.skipped",
                extra={
                    "event": "snapshot.skipped",
                    "session_id": session_id,
                    "turn_index": turn_index,
                    "reason": "no running event loop",
                },
            )
            return
        self.tasks.spawn(
            self._create_snapshot(session_id, turn_index), label="snapshot.create"
        )

    async def _create_snapshot(self, session_id: str, turn_index: int) -> None:
        try:
            await self.store.create_snapshot(session_id, turn_index)
        except Exception as exc:  # noqa: BLE001 - a snapshot never fails its turn.
            LOGGER.warning(
                "snapshot.create_failed",
                extra={
                    "event": "snapshot.create_failed",
                    "session_id": session_id,
                    "turn_index": turn_index,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return
        LOGGER.debug(
            "snapshot.created",
            extra={
                "event": "snapshot.created",
                "session_id": session_id,
                "turn_index": turn_index,
            },
        )

    async def list_snapshots(self, session_id: str) -> list[TurnSnapshot]:
        return list(await self.store.list_snapshots(session_id))

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def rollback_to_turn(self, session_id: str, turn_index: int) -> RollbackResult:
        """Restore the workspace to ``turn_index`` and keep turns ``[0, turn_index]``.

        Rolling back to the latest turn is a no-op (``performed`` is False);
        repeating a rollback therefore reports the same restored files without
        touching the store again.

        Raises:
            UnknownSession: the session does not exist
            NoRollbackTarget: ``turn_index`` is outside the session's turns
            SnapshotRestoreFailed: the store failed; conversation state is untouched
        """
        async with self._lock(session_id):
            turn_count = self.sessions.turn_count(session_id)
            if turn_index < 0 or turn_index >= turn_count:
                raise NoRollbackTarget(
                    f"Session {session_id} has no turn at index {turn_index} "
                    f"({turn_count} turns)."
                )

            if turn_index == turn_count - 1:
                previous = self._last_rollback.get(session_id)
                files = previous[1] if previous and previous[0] == turn_index else ()
                LOGGER.debug(
                    "rollback.noop",
                    extra={
                        "event": "rollback.noop",
                        "session_id": session_id,
                        "turn_index": turn_index,
                    },
                )
                return RollbackResult(session_id, turn_index, files, performed=False)

            try:
                restored = tuple(await self.store.restore_to_turn(session_id, turn_index))
            except SnapshotRestoreFailed as exc:
                self._log_restore_failure(session_id, turn_index, exc)
                exc.session_id = session_id
                exc.turn_index = turn_index
                raise
            except Exception as exc:  # noqa: BLE001 - surfaced as a typed restore failure.
                self._log_restore_failure(session_id, turn_index, exc)
                raise SnapshotRestoreFailed(
                    f"Restoring session {session_id} to turn {turn_index} failed: {exc}",
                    session_id,
                    turn_index,
                ) from exc

            removed = self.sessions.truncate_turns(session_id, turn_index)
            self._last_rollback[session_id] = (turn_index, restored)
            LOGGER.info(
                "rollback.completed",
                extra={
                    "event": "rollback.completed",
                    "session_id": session_id,
                    "turn_index": turn_index,
                    "restored_files": len(restored),
                    "removed_turns": len(removed),
                },
            )
            await self._broadcast(session_id, turn_index, restored)
            return RollbackResult(session_id, turn_index, restored, performed=True)

    def _log_restore_failure(
        self, session_id: str, turn_index: int, exc: Exception
    ) -> None:
        LOGGER.error(
            "rollback.restore_failed",
            extra={
                "event": "rollback.restore_failed",
                "session_id": session_id,
                "turn_index": turn_index,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )

    async def _broadcast(
        self, session_id: str, turn_index: int, restored: tuple[str, ...]
    ) -> None:
        await self.bus.publish(FILE_TREE_REFRESH, {"sessionId": session_id})
        for file_path in restored:
            await self.bus.publish(
                EDITOR_FILE_CHANGED, EditorFileChangedEvent(file_path).to_payload()
            )
        await self.bus.publish(
            ROLLBACK_COMPLETED,
            RollbackCompletedEvent(
                session_id=session_id,
                turn_index=turn_index,
                restored_files=list(restored),
            ).to_payload(),
        )
