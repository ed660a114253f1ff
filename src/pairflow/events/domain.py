"""Names and payload builders for events the core broadcasts to subscribers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FILE_TREE_REFRESH = "file-tree:refresh"
EDITOR_FILE_CHANGED = "editor:file-changed"
ROLLBACK_COMPLETED = "snapshot:rollback-completed"

SESSION_CREATED = "session:created"
SESSION_UPDATED = "session:updated"
SESSION_DELETED = "session:deleted"
SESSION_SWITCHED = "session:switched"
TURN_FINISHED = "turn:finished"


@dataclass
class EditorFileChangedEvent:
    file_path: str

    def to_payload(self) -> dict[str, Any]:
        return {"filePath": self.file_path}


@dataclass
class RollbackCompletedEvent:
    session_id: str
    turn_index: int
    restored_files: list[str]

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "turnIndex": self.turn_index,
            "restoredFiles": list(self.restored_files),
        }


@dataclass
class TurnFinishedEvent:
    session_id: str
    turn_id: str
    turn_index: int
    status: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "turnId": self.turn_id,
            "turnIndex": self.turn_index,
            "status": self.status,
        }
