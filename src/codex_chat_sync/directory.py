from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .backend import Backend, text_input
from .config import merge_conversation_config
from .errors import CodexError, CodexProtocolError, ConversationNotFoundError
from .models import (
    UNSET,
    ConversationConfig,
    ConversationPage,
    ConversationRecord,
    CreatedConversation,
    ResumedConversation,
    SendResult,
)
from .protocol import PREVIEW_FIELDS

logger = logging.getLogger(__name__)


def preview_text(text: str, max_length: int) -> str:
    """Return the first non-empty line of `text`, truncated to `max_length`."""
    for line in text.splitlines():
        line = line.strip()
        if line:
            break
    else:
        return ""
    if len(line) <= max_length:
        return line
    if max_length <= 1:
        return line[:max_length]
    return line[: max_length - 1].rstrip() + "…"


class ConversationDirectory:
    """Conversation identity, the context index and compose drafts.

    Creation is single-flight per context key: while a `newConversation`
    call is outstanding for a context, every caller asking for that context
    (the one that started it included) awaits the same future, so
    `reset_inflight` can release all of them at once.
    """

    def __init__(
        self,
        backend: Backend,
        defaults: ConversationConfig | None = None,
        *,
        preview_length: int = 80,
        context_is_cwd: bool = True,
    ) -> None:
        """Create a directory over a backend.

        Args:
            backend: Backend used for create/send/list/resume calls.
            defaults: Config applied to every created conversation.
            preview_length: Maximum preview text length.
            context_is_cwd: Use the context key as `cwd` when no cwd is configured.
        """
        self._backend = backend
        self._defaults = defaults
        self._preview_length = preview_length
        self._context_is_cwd = context_is_cwd

        self._records: dict[str, ConversationRecord] = {}
        self._by_context: dict[str, list[str]] = {}
        self._active: dict[str, str] = {}
        self._drafts: dict[str, str] = {}
        self._configs: dict[str, ConversationConfig] = {}
        self._inflight: dict[str, asyncio.Future[str]] = {}
        self._creations: dict[str, asyncio.Task[None]] = {}

    async def ensure_conversation(
        self,
        context_key: str,
        config: ConversationConfig | None = None,
    ) -> str:
        """Return the active conversation of a context, creating one if needed."""
        active = self._active.get(context_key)
        if active is not None:
            return active
        return await self._create_single_flight(context_key, config)

    async def create_conversation(
        self,
        context_key: str,
        config: ConversationConfig | None = None,
    ) -> str:
        """Create a fresh conversation and make it the context's active one."""
        return await self._create_single_flight(context_key, config)

    async def send(
        self,
        conversation_id: str,
        text: str,
        *,
        on_replaced: Callable[[str, str], None] | None = None,
    ) -> SendResult:
        """Send one text message, replacing a vanished conversation once.

        The replacement is created with the config the vanished conversation
        was created with. `on_replaced(stale_id, replacement_id)` runs after
        the replacement exists and before the message is resent to it.
        """
        context_key = self.context_of(conversation_id)
        try:
            await self._backend.send_message(conversation_id, [text_input(text)])
        except ConversationNotFoundError as exc:
            if context_key is None:
                return self._failed(None, conversation_id, text, exc)
            logger.info(
                "conversation %s no longer exists; creating a replacement for %s",
                conversation_id,
                context_key,
            )
            return await self._resend(conversation_id, context_key, text, on_replaced)
        except CodexError as exc:
            return self._failed(context_key, conversation_id, text, exc)
        return SendResult(ok=True, conversation_id=conversation_id)

    async def resume_conversation(
        self,
        conversation_id: str,
        context_key: str,
        *,
        path: str | None = None,
        config: ConversationConfig | None = None,
    ) -> ResumedConversation:
        """Resume a stored conversation and index it under `context_key`."""
        resumed = await self._backend.resume_conversation(
            conversation_id,
            path=path,
            config=config,
        )
        record = self.record(
            resumed.conversation_id,
            context_key,
            created_path=path,
            model=resumed.model,
        )
        if config is not None:
            self._configs[resumed.conversation_id] = self._config_for(context_key, config)
        for msg in reversed(resumed.history):
            if self._preview_from_msg(record, msg):
                break
        logger.info("resumed conversation %s under %s", resumed.conversation_id, context_key)
        return resumed

    async def list_conversations(
        self,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ConversationPage:
        return await self._backend.list_conversations(cursor=cursor, limit=limit)

    def record(
        self,
        conversation_id: str,
        context_key: str,
        *,
        preview: str = "",
        created_path: str | None = None,
        model: str | None = None,
        activate: bool = True,
    ) -> ConversationRecord:
        """Insert or refresh a record and index it under `context_key`."""
        existing = self._records.get(conversation_id)
        if existing is not None and existing.context_key != context_key:
            self._unindex(conversation_id, existing.context_key)
            existing = None

        if existing is None:
            record = ConversationRecord(
                conversation_id=conversation_id,
                context_key=context_key,
                preview=preview,
                created_path=created_path,
                model=model,
            )
            self._records[conversation_id] = record
            self._by_context.setdefault(context_key, []).append(conversation_id)
        else:
            record = existing
            if preview:
                record.preview = preview
            if created_path is not None:
                record.created_path = created_path
            if model is not None:
                record.model = model

        if activate:
            self._active[context_key] = conversation_id
        return record

    def get(self, conversation_id: str) -> ConversationRecord | None:
        return self._records.get(conversation_id)

    def conversations(self, context_key: str) -> list[ConversationRecord]:
        """Return the records of a context in creation order."""
        return [self._records[cid] for cid in self._by_context.get(context_key, [])]

    def context_of(self, conversation_id: str) -> str | None:
        record = self._records.get(conversation_id)
        return record.context_key if record is not None else None

    def active_conversation(self, context_key: str) -> str | None:
        return self._active.get(context_key)

    def update_preview(self, conversation_id: str, text: str) -> bool:
        """Set the preview from message text; returns False for unknown ids."""
        record = self._records.get(conversation_id)
        if record is None:
            return False
        preview = preview_text(text, self._preview_length)
        if not preview:
            return False
        record.preview = preview
        return True

    def remove(self, conversation_id: str) -> ConversationRecord | None:
        """Drop a record; the context falls back to its newest remaining conversation."""
        record = self._records.pop(conversation_id, None)
        if record is None:
            return None
        self._configs.pop(conversation_id, None)
        self._unindex(conversation_id, record.context_key)
        return record

    def set_draft(self, context_key: str, text: str) -> None:
        if text:
            self._drafts[context_key] = text
        else:
            self._drafts.pop(context_key, None)

    def draft(self, context_key: str) -> str:
        return self._drafts.get(context_key, "")

    def take_draft(self, context_key: str) -> str:
        return self._drafts.pop(context_key, "")

    def reset_inflight(self, exc: BaseException) -> None:
        """Fail every outstanding creation so no waiter blocks forever."""
        inflight, self._inflight = self._inflight, {}
        creations, self._creations = self._creations, {}
        for task in creations.values():
            task.cancel()
        for context_key, future in inflight.items():
            if not future.done():
                logger.info("abandoning in-flight creation for %s: %s", context_key, exc)
                future.set_exception(exc)

    async def _create_single_flight(
        self,
        context_key: str,
        config: ConversationConfig | None,
    ) -> str:
        future = self._inflight.get(context_key)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_consume_exception)
            self._inflight[context_key] = future
            self._creations[context_key] = asyncio.create_task(
                self._create(context_key, config, future)
            )
        else:
            logger.debug("joining in-flight creation for %s", context_key)
        return await asyncio.shield(future)

    async def _create(
        self,
        context_key: str,
        config: ConversationConfig | None,
        future: asyncio.Future[str],
    ) -> None:
        effective = self._config_for(context_key, config)
        try:
            created = await self._create_call(effective)
        except asyncio.CancelledError:
            self._release(context_key, future)
            if not future.done():
                future.cancel()
            raise
        except Exception as exc:
            self._release(context_key, future)
            if not future.done():
                future.set_exception(exc)
            return

        self._release(context_key, future)
        self.record(
            created.conversation_id,
            context_key,
            created_path=created.rollout_path,
            model=created.model,
        )
        self._configs[created.conversation_id] = effective
        logger.info("created conversation %s for %s", created.conversation_id, context_key)
        if not future.done():
            future.set_result(created.conversation_id)

    async def _create_call(self, config: ConversationConfig) -> CreatedConversation:
        try:
            return await self._backend.create_conversation(config)
        except CodexError:
            raise
        except Exception as exc:
            raise CodexProtocolError(
                f"newConversation failed: {exc.__class__.__name__}: {exc}"
            ) from exc

    def _release(self, context_key: str, future: asyncio.Future[str]) -> None:
        if self._inflight.get(context_key) is future:
            del self._inflight[context_key]
            self._creations.pop(context_key, None)

    def _config_for(
        self,
        context_key: str,
        config: ConversationConfig | None,
    ) -> ConversationConfig:
        merged = merge_conversation_config(self._defaults, config)
        if self._context_is_cwd and merged.cwd is UNSET:
            merged.cwd = context_key
        return merged

    async def _resend(
        self,
        stale_id: str,
        context_key: str,
        text: str,
        on_replaced: Callable[[str, str], None] | None,
    ) -> SendResult:
        config = self._configs.get(stale_id)
        self.remove(stale_id)
        try:
            replacement = await self.create_conversation(context_key, config)
        except CodexError as exc:
            return self._failed(context_key, stale_id, text, exc)

        if on_replaced is not None:
            on_replaced(stale_id, replacement)
        try:
            await self._backend.send_message(replacement, [text_input(text)])
        except CodexError as exc:
            return self._failed(context_key, replacement, text, exc)
        return SendResult(ok=True, conversation_id=replacement, recreated=True)

    def _failed(
        self,
        context_key: str | None,
        conversation_id: str,
        text: str,
        exc: Exception,
    ) -> SendResult:
        logger.warning("send to conversation %s failed: %s", conversation_id, exc)
        if context_key is not None:
            self.set_draft(context_key, text)
        return SendResult(
            ok=False,
            conversation_id=conversation_id,
            error=str(exc),
            restored_text=text,
        )

    def _unindex(self, conversation_id: str, context_key: str) -> None:
        ids = self._by_context.get(context_key, [])
        if conversation_id in ids:
            ids.remove(conversation_id)
        if not ids:
            self._by_context.pop(context_key, None)
        if self._active.get(context_key) == conversation_id:
            if ids:
                self._active[context_key] = ids[-1]
            else:
                del self._active[context_key]

    def _preview_from_msg(self, record: ConversationRecord, msg: dict[str, Any]) -> bool:
        field = PREVIEW_FIELDS.get(str(msg.get("type")))
        if field is None:
            return False
        message = msg.get(field)
        if not isinstance(message, str):
            return False
        return self.update_preview(record.conversation_id, message)


def _consume_exception(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()
