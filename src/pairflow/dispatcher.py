"""Message dispatch: session bootstrap, image upload, body expansion, send.

The display body (what the user typed) and the model body (context
expansion + text) are built side by side and never conflated: the local turn
and anything persisted from it carry the display body, only the model body
goes upstream.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import logging

from .events.inbound import ImageAnalysisStarted, TurnFailed, TurnStarted
from .exceptions import ImageUploadFailed, NoWorkspaceModel, UpstreamRejected
from .interfaces import ImageUploader, SessionBootstrap, UpstreamSender
from .models import (
    CodeSnippetContext,
    ContextItem,
    DirectoryContext,
    FileContext,
    GitRefContext,
    ImageContext,
    PreparedMessage,
    SessionConfig,
    TerminalCommandContext,
    UrlContext,
    UserMessage,
    new_id,
)
from .session_manager import SessionManager

LOGGER = logging.getLogger(__name__)

DEFAULT_AGENT_TYPE = "agentic"


def partition_contexts(
    contexts: Sequence[ContextItem],
) -> tuple[list[ImageContext], list[ContextItem]]:
    """Split contexts into inline images that need upload and everything else."""
    uploads: list[ImageContext] = []
    references: list[ContextItem] = []
    for ctx in contexts:
        if isinstance(ctx, ImageContext) and ctx.needs_upload:
            uploads.append(ctx)
        else:
            references.append(ctx)
    return uploads, references


def _format_size(size: int | None) -> str:
    if not size:
        return ""
    return f" ({size / 1024:.1f}KB)"


def expand_context(ctx: ContextItem) -> str:
    """Deterministic model-facing expansion for one context item."""
    if isinstance(ctx, FileContext):
        return f"[File: {ctx.relative_path or ctx.file_path}]"
    if isinstance(ctx, DirectoryContext):
        return f"[Directory: {ctx.directory_path}]"
    if isinstance(ctx, CodeSnippetContext):
        return f"[Code Snippet: {ctx.file_path}:{ctx.start_line}-{ctx.end_line}]"
    if isinstance(ctx, ImageContext):
        name = ctx.image_name or "Untitled image"
        size = _format_size(ctx.file_size)
        if ctx.is_local and ctx.image_path:
            return (
                f"[Image: {name}{size}]\n"
                f"Path: {ctx.image_path}\n"
                "Tip: You can use the AnalyzeImage tool with the image_path parameter."
            )
        return (
            f"[Image: {name}{size} (from clipboard)]\n"
            f"Image ID: {ctx.id}\n"
            "Tip: You can use the AnalyzeImage tool.\n"
            f'Parameter: image_id="{ctx.id}"'
        )
    if isinstance(ctx, TerminalCommandContext):
        return f"[Command: {ctx.command}]"
    if isinstance(ctx, GitRefContext):
        return f"[Git Ref: {ctx.ref_value}]"
    if isinstance(ctx, UrlContext):
        return f"[URL: {ctx.url}]"
    return ""


def build_model_body(text: str, contexts: Sequence[ContextItem]) -> str:
    """Prefix the user text with the expansion of every context item."""
    section = "\n".join(part for part in map(expand_context, contexts) if part)
    if not section:
        return text
    return f"{section}\n\n{text}"


class MessageDispatcher:
    """Send user-composed messages upstream.

    Responsibilities:
    - Creating a session when none is active
    - Uploading inline image contexts (all-or-nothing)
    - Building display and model bodies
    - Creating the optimistic local turn and delivering the model body

    Failures propagate to the caller; retrying is the retry queue's job.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        bootstrap: SessionBootstrap,
        uploader: ImageUploader,
        upstream: UpstreamSender,
        *,
        default_agent_type: str = DEFAULT_AGENT_TYPE,
    ) -> None:
        self.sessions = session_manager
        self.bootstrap = bootstrap
        self.uploader = uploader
        self.upstream = upstream
        self.default_agent_type = default_agent_type
        self._on_contexts_consumed: Callable[[], None] | None = None

    def on_contexts_consumed(self, callback: Callable[[], None]) -> None:
        """Register callback invoked once a send is accepted upstream."""
        self._on_contexts_consumed = callback

    async def send_message(
        self,
        text: str,
        contexts: Sequence[ContextItem] = (),
        agent_type: str | None = None,
        *,
        session_id: str | None = None,
    ) -> PreparedMessage:
        """Send a message and return what was delivered.

        Raises:
            ValueError: the message text is blank
            NoWorkspaceModel: a session was needed but no default model exists
            ImageUploadFailed: inline images could not be uploaded; nothing applied
            UpstreamRejected: the backend refused the message; carries ``prepared``
        """
        display_body = text.strip()
        if not display_body:
            raise ValueError("Message text must not be empty.")
        agent = agent_type or self.default_agent_type

        target_session = session_id or await self._ensure_session(agent)
        LOGGER.debug(
            "dispatch.started",
            extra={
                "event": "dispatch.started",
                "session_id": target_session,
                "context_count": len(contexts),
                "agent_type": agent,
            },
        )

        uploads, _ = partition_contexts(contexts)
        if uploads:
            await self._upload(target_session, uploads)

        prepared = PreparedMessage(
            session_id=target_session,
            turn_id=new_id("turn"),
            display_body=display_body,
            model_body=build_model_body(display_body, contexts),
            agent_type=agent,
        )
        images = tuple(ctx for ctx in contexts if isinstance(ctx, ImageContext))
        self._start_local_turn(prepared, images)
        await self.deliver(prepared)

        if self._on_contexts_consumed is not None:
            self._on_contexts_consumed()
        LOGGER.info(
            "dispatch.sent",
            extra={
                "event": "dispatch.sent",
                "session_id": prepared.session_id,
                "turn_id": prepared.turn_id,
                "agent_type": agent,
                "context_count": len(contexts),
            },
        )
        return prepared

    async def resend(self, prepared: PreparedMessage) -> None:
        """Deliver a previously prepared message again, reusing its local turn."""
        self._start_local_turn(prepared, ())
        await self.deliver(prepared)

    async def deliver(self, prepared: PreparedMessage) -> None:
        """Send the model body upstream; a refusal marks the local turn ``error``."""
        try:
            await self.upstream.send_message(
                prepared.session_id,
                prepared.turn_id,
                prepared.model_body,
                prepared.agent_type,
            )
        except Exception as exc:  # noqa: BLE001 - any upstream failure is a rejection.
            reason = str(exc) or type(exc).__name__
            LOGGER.warning(
                "dispatch.rejected",
                extra={
                    "event": "dispatch.rejected",
                    "session_id": prepared.session_id,
                    "turn_id": prepared.turn_id,
                    "error_type": type(exc).__name__,
                    "error": reason,
                },
            )
            self.sessions.apply_event(
                TurnFailed(
                    session_id=prepared.session_id,
                    turn_id=prepared.turn_id,
                    error=reason,
                )
            )
            if isinstance(exc, UpstreamRejected):
                exc.prepared = prepared
                raise
            raise UpstreamRejected(reason, prepared) from exc

    async def _ensure_session(self, agent_type: str) -> str:
        current = self.sessions.active_session_id
        if current is not None:
            return current

        model_id = await self.bootstrap.resolve_default_model()
        if not model_id:
            raise NoWorkspaceModel("No default model is configured for this workspace.")
        config = SessionConfig(model_name=model_id, mode=agent_type)
        session_id = await self.bootstrap.create_session(config)
        self.sessions.create_session(session_id, config=config)
        LOGGER.debug(
            "dispatch.session_created",
            extra={
                "event": "dispatch.session_created",
                "session_id": session_id,
                "model": model_id,
            },
        )
        return session_id

    async def _upload(self, session_id: str, images: list[ImageContext]) -> None:
        try:
            await self.uploader.upload_image_contexts(images)
        except Exception as exc:  # noqa: BLE001 - surfaced as a typed upload failure.
            LOGGER.error(
                "dispatch.upload_failed",
                extra={
                    "event": "dispatch.upload_failed",
                    "session_id": session_id,
                    "image_count": len(images),
                    "error": str(exc),
                },
            )
            raise ImageUploadFailed(f"Image upload failed: {exc}") from exc
        LOGGER.debug(
            "dispatch.images_uploaded",
            extra={
                "event": "dispatch.images_uploaded",
                "session_id": session_id,
                "ids": [image.id for image in images],
            },
        )

    def _start_local_turn(
        self, prepared: PreparedMessage, images: tuple[ImageContext, ...]
    ) -> None:
        self.sessions.apply_event(
            TurnStarted(
                session_id=prepared.session_id,
                turn_id=prepared.turn_id,
                user_message=UserMessage(
                    id=f"user_{prepared.turn_id}",
                    content=prepared.display_body,
                    has_images=bool(images),
                ),
            )
        )
        if images:
            self.sessions.apply_event(
                ImageAnalysisStarted(
                    session_id=prepared.session_id,
                    turn_id=prepared.turn_id,
                    images=images,
                )
            )
