from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .approvals import ApprovalQueue
from .backend import Backend
from .client import CodexClient
from .coalescer import DeltaCoalescer
from .config import ClientSettings
from .directory import ConversationDirectory
from .errors import BackendExitedError, CodexError, CodexTransportError
from .models import (
    ApprovalRequest,
    ConversationConfig,
    ConversationPage,
    DecisionResult,
    InterruptResult,
    RequestId,
    ResumedConversation,
    SendResult,
    TranscriptEntry,
    TranscriptUpdate,
)
from .pipeline import EventPipeline
from .protocol import BACKEND_EXITED_METHOD, PREVIEW_FIELDS
from .turns import TurnTracker

logger = logging.getLogger(__name__)


class ChatSync:
    """Wires one backend to the pipeline, tracker, directory and approval queue.

    A single pump task reads the backend's notification stream and feeds it
    into `EventPipeline.ingest`, so events are never processed concurrently.
    User-facing calls (`send`, `interrupt`, `decide`) return result models
    instead of raising backend errors.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        defaults: ConversationConfig | None = None,
        preview_length: int = 80,
    ) -> None:
        self._backend = backend
        self.tracker = TurnTracker(backend.interrupt_turn)
        self.approvals = ApprovalQueue(backend.respond_approval)
        self.coalescer = DeltaCoalescer()
        self.pipeline = EventPipeline(self.tracker, self.approvals, self.coalescer)
        self.directory = ConversationDirectory(
            backend,
            defaults,
            preview_length=preview_length,
        )

        self._pump_task: asyncio.Task[None] | None = None
        self._sends: dict[tuple[str, str], asyncio.Future[SendResult]] = {}
        self._unsubscribe_preview = self.pipeline.subscribe(self._update_preview)
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings | None = None,
        *,
        defaults: ConversationConfig | None = None,
    ) -> ChatSync:
        """Build an unstarted instance backed by a `CodexClient`."""
        resolved = settings if settings is not None else ClientSettings.from_env()
        return cls(
            CodexClient.from_settings(resolved),
            defaults=defaults,
            preview_length=resolved.preview_length,
        )

    @property
    def backend(self) -> Backend:
        return self._backend

    async def start(self) -> None:
        """Start the backend and the notification pump."""
        if self._closed:
            raise CodexTransportError("chat sync is closed")
        await self._backend.start()
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def __aenter__(self) -> ChatSync:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop the pump, release waiters and close the backend."""
        if self._closed:
            return
        self._closed = True

        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

        self.directory.reset_inflight(CodexTransportError("chat sync is closing"))
        await self.tracker.aclose()
        self._unsubscribe_preview()
        await self._backend.close()

    async def send(
        self,
        context_key: str,
        text: str,
        config: ConversationConfig | None = None,
    ) -> SendResult:
        """Send a user message to the context's conversation, creating it if needed.

        Identical sends issued while the first is still outstanding share its
        result instead of reaching the backend twice.
        """
        key = (context_key, text)
        inflight = self._sends.get(key)
        if inflight is not None:
            logger.debug("collapsing duplicate send for %s", context_key)
            return await asyncio.shield(inflight)

        future: asyncio.Future[SendResult] = asyncio.get_running_loop().create_future()
        self._sends[key] = future
        try:
            result = await self._send(context_key, text, config)
        except BaseException:
            future.cancel()
            raise
        finally:
            if self._sends.get(key) is future:
                del self._sends[key]
        future.set_result(result)
        return result

    async def interrupt(self, conversation_id: str) -> InterruptResult:
        return await self.tracker.interrupt(conversation_id)

    async def decide(self, request_id: RequestId, decision: str) -> DecisionResult:
        """Answer an approval request (`accept`, `accept_for_session`, `decline`, `abort`)."""
        return await self.approvals.decide(request_id, decision)

    def current_approval(self) -> ApprovalRequest | None:
        return self.approvals.current()

    def transcript(self, conversation_id: str) -> list[TranscriptEntry]:
        return self.pipeline.transcript(conversation_id)

    def is_busy(self, conversation_id: str) -> bool:
        return self.tracker.is_busy(conversation_id)

    def subscribe(self, listener: Callable[[TranscriptUpdate], None]) -> Callable[[], None]:
        return self.pipeline.subscribe(listener)

    async def new_conversation(
        self,
        context_key: str,
        config: ConversationConfig | None = None,
    ) -> str:
        """Start a fresh conversation for a context and make it active."""
        return await self.directory.create_conversation(context_key, config)

    async def resume(
        self,
        conversation_id: str,
        context_key: str,
        *,
        path: str | None = None,
        config: ConversationConfig | None = None,
    ) -> ResumedConversation:
        """Resume a stored conversation and load its history into the transcript."""
        resumed = await self.directory.resume_conversation(
            conversation_id,
            context_key,
            path=path,
            config=config,
        )
        self.pipeline.load_history(resumed.conversation_id, resumed.history)
        return resumed

    async def list_conversations(
        self,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ConversationPage:
        return await self.directory.list_conversations(cursor=cursor, limit=limit)

    def clear_conversation(self, conversation_id: str) -> None:
        self.pipeline.clear_conversation(conversation_id)

    def remove_conversation(self, conversation_id: str) -> None:
        """Remove a conversation from the directory and drop all its state."""
        self.directory.remove(conversation_id)
        self.pipeline.forget(conversation_id)

    async def _send(
        self,
        context_key: str,
        text: str,
        config: ConversationConfig | None,
    ) -> SendResult:
        if not text.strip():
            return SendResult(ok=False, error="message is empty", restored_text=text)

        try:
            conversation_id = await self.directory.ensure_conversation(context_key, config)
        except CodexError as exc:
            logger.warning("could not create a conversation for %s: %s", context_key, exc)
            self.directory.set_draft(context_key, text)
            return SendResult(ok=False, error=str(exc), restored_text=text)

        self.tracker.begin_turn(conversation_id)
        result = await self.directory.send(
            conversation_id,
            text,
            on_replaced=self._move_turn,
        )
        if not result.ok:
            self.tracker.end_turn(result.conversation_id or conversation_id)
            return result

        if self.directory.draft(context_key) == text:
            self.directory.take_draft(context_key)
        return result

    def _move_turn(self, stale_id: str, replacement_id: str) -> None:
        # Runs before the resend so the replacement's events find it busy.
        self.tracker.forget(stale_id)
        self.tracker.begin_turn(replacement_id)

    async def _pump(self) -> None:
        async for notification in self._backend.notifications():
            if notification.get("method") == BACKEND_EXITED_METHOD:
                self._handle_backend_exit(notification)
                continue
            self.pipeline.ingest(notification)

    def _handle_backend_exit(self, notification: Mapping[str, Any]) -> None:
        params = notification.get("params")
        message = params.get("message") if isinstance(params, Mapping) else None
        reason = message if isinstance(message, str) and message else "backend exited"
        logger.warning("backend exited: %s", reason)
        self.pipeline.backend_exited()
        self.directory.reset_inflight(BackendExitedError(reason))

    def _update_preview(self, update: TranscriptUpdate) -> None:
        if update.kind != "appended" or update.entry is None:
            return
        field = PREVIEW_FIELDS.get(update.entry.type)
        if field is None:
            return
        text = update.entry.msg.get(field)
        if isinstance(text, str):
            self.directory.update_preview(update.conversation_id, text)
