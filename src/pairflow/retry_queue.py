"""Retry queue for messages the upstream rejected."""

from __future__ import annotations

from copy import deepcopy
import logging

from .dispatcher import MessageDispatcher
from .exceptions import FlowChatError, UpstreamRejected
from .models import PreparedMessage, QueuedMessage, QueueStatus, new_id

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class MessageRetryQueue:
    """Hold rejected messages and redeliver them on request.

    A retry reuses the message's local dialog turn, so a message that
    eventually gets through never shows up twice in its session.
    """

    def __init__(
        self, dispatcher: MessageDispatcher, *, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> None:
        self.dispatcher = dispatcher
        self.max_retries = max_retries
        self._messages: dict[str, QueuedMessage] = {}

    def enqueue(self, prepared: PreparedMessage, error: str | None = None) -> QueuedMessage:
        """Queue a prepared message; a second enqueue of the same turn returns the first."""
        for message in self._messages.values():
            if message.local_dialog_turn_id == prepared.turn_id and message.status in (
                QueueStatus.QUEUED,
                QueueStatus.PROCESSING,
            ):
                return deepcopy(message)
        message = QueuedMessage(id=new_id("queued"), prepared=prepared, last_error=error)
        self._messages[message.id] = message
        LOGGER.info(
            "retry.enqueued",
            extra={
                "event": "retry.enqueued",
                "message_id": message.id,
                "session_id": message.session_id,
                "turn_id": message.local_dialog_turn_id,
            },
        )
        return deepcopy(message)

    def enqueue_rejected(self, exc: UpstreamRejected) -> QueuedMessage:
        if exc.prepared is None:
            raise ValueError("Rejected send carries no prepared message to retry.")
        return self.enqueue(exc.prepared, error=str(exc))

    def get(self, message_id: str) -> QueuedMessage | None:
        message = self._messages.get(message_id)
        return deepcopy(message) if message is not None else None

    def messages(self, status: QueueStatus | None = None) -> list[QueuedMessage]:
        return [
            deepcopy(message)
            for message in self._messages.values()
            if status is None or message.status == status
        ]

    def remove(self, message_id: str) -> None:
        """Forget a message that is not currently being delivered."""
        message = self._messages.get(message_id)
        if message is None:
            raise KeyError(message_id)
        if message.status == QueueStatus.PROCESSING:
            raise RuntimeError(f"Message {message_id} is being delivered.")
        del self._messages[message_id]

    async def retry(self, message_id: str) -> QueuedMessage:
        """Make one delivery attempt; returns the message with its new status.

        A message already being delivered, completed or failed is returned
        unchanged without a new attempt.
        """
        message = self._messages.get(message_id)
        if message is None:
            raise KeyError(message_id)
        if message.status != QueueStatus.QUEUED:
            LOGGER.debug(
                "retry.skipped",
                extra={
                    "event": "retry.skipped",
                    "message_id": message_id,
                    "status": message.status.value,
                },
            )
            return deepcopy(message)

        message.status = QueueStatus.PROCESSING
        try:
            await self.dispatcher.resend(message.prepared)
        except UpstreamRejected as exc:
            message.retry_count += 1
            message.last_error = str(exc)
            if message.retry_count >= self.max_retries:
                message.status = QueueStatus.FAILED
                LOGGER.warning(
                    "retry.exhausted",
                    extra={
                        "event": "retry.exhausted",
                        "message_id": message_id,
                        "turn_id": message.local_dialog_turn_id,
                        "retry_count": message.retry_count,
                    },
                )
            else:
                message.status = QueueStatus.QUEUED
                LOGGER.info(
                    "retry.attempt_failed",
                    extra={
                        "event": "retry.attempt_failed",
                        "message_id": message_id,
                        "retry_count": message.retry_count,
                        "error": message.last_error,
                    },
                )
        except FlowChatError as exc:
            # The local turn or its session is gone; nothing left to retry into.
            message.status = QueueStatus.FAILED
            message.last_error = str(exc)
            LOGGER.warning(
                "retry.abandoned",
                extra={
                    "event": "retry.abandoned",
                    "message_id": message_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
        else:
            message.status = QueueStatus.COMPLETED
            message.last_error = None
            LOGGER.info(
                "retry.delivered",
                extra={
                    "event": "retry.delivered",
                    "message_id": message_id,
                    "turn_id": message.local_dialog_turn_id,
                    "retry_count": message.retry_count,
                },
            )
        return deepcopy(message)

    async def drain(self) -> list[QueuedMessage]:
        """Retry every queued message once, oldest first."""
        queued = [m.id for m in self._messages.values() if m.status == QueueStatus.QUEUED]
        return [await self.retry(message_id) for message_id in queued]
