from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .approvals import ApprovalQueue, approval_from_event
from .coalescer import DeltaCoalescer
from .models import DeltaKey, TranscriptEntry, TranscriptUpdate
from .protocol import (
    APPROVAL_EVENT_TYPES,
    RETIRED_DELTA_KINDS,
    is_delta_event,
    is_turn_terminal,
)
from .turns import TurnTracker

logger = logging.getLogger(__name__)

Listener = Callable[[TranscriptUpdate], None]

_ITEM_ID_KEYS = ("item_id", "itemId", "call_id", "callId")
_TURN_ID_KEYS = ("turn_id", "turnId")


class EventPipeline:
    """Single entry point for backend conversation notifications.

    Each notification is classified as a delta or a final event. Deltas are
    coalesced into scratch buffers and never stored; final events are
    appended to the conversation transcript in arrival order and then
    forwarded to the turn tracker and, for approval requests, to the
    approval queue. `ingest` is synchronous and must be called from a
    single consumer.
    """

    def __init__(
        self,
        tracker: TurnTracker,
        approvals: ApprovalQueue,
        coalescer: DeltaCoalescer | None = None,
    ) -> None:
        self._tracker = tracker
        self._approvals = approvals
        self._coalescer = coalescer if coalescer is not None else DeltaCoalescer()
        self._transcripts: dict[str, list[TranscriptEntry]] = {}
        self._listeners: list[Listener] = []

    @property
    def coalescer(self) -> DeltaCoalescer:
        return self._coalescer

    @property
    def tracker(self) -> TurnTracker:
        return self._tracker

    @property
    def approvals(self) -> ApprovalQueue:
        return self._approvals

    def ingest(self, notification: Mapping[str, Any]) -> bool:
        """Process one `codex/event/*` notification; returns False when dropped."""
        params = notification.get("params") if isinstance(notification, Mapping) else None
        if not isinstance(params, Mapping):
            logger.warning("dropping notification without params: %r", notification)
            return False
        return self.ingest_event(
            params.get("conversationId"),  # type: ignore[arg-type]
            params.get("msg"),  # type: ignore[arg-type]
            event_id=_event_id(params.get("id")),
        )

    def ingest_event(
        self,
        conversation_id: str,
        msg: Mapping[str, Any],
        event_id: str | None = None,
    ) -> bool:
        """Process one event message already unpacked from its envelope."""
        if not isinstance(conversation_id, str) or not conversation_id:
            logger.warning("dropping event without conversation id: %r", msg)
            return False
        if not isinstance(msg, Mapping):
            logger.warning("dropping event without msg for conversation %s", conversation_id)
            return False
        event_type = msg.get("type")
        if not isinstance(event_type, str) or not event_type:
            logger.warning("dropping event without type for conversation %s", conversation_id)
            return False

        turn_id = _turn_id(msg, event_id)
        if is_delta_event(event_type):
            return self._ingest_delta(conversation_id, event_type, msg, turn_id)

        entries = self._transcripts.setdefault(conversation_id, [])
        entry = TranscriptEntry(
            conversation_id=conversation_id,
            event_id=event_id,
            type=event_type,
            msg=dict(msg),
            sequence=len(entries),
        )
        entries.append(entry)
        self._retire_buffers(conversation_id, event_type, msg)

        self._tracker.observe(conversation_id, event_type, turn_id)
        if event_type in APPROVAL_EVENT_TYPES:
            request = approval_from_event(conversation_id, msg, turn_id=turn_id)
            if request is not None:
                self._approvals.enqueue(request)
            else:
                logger.debug("approval event without request id in %s", conversation_id)

        self._notify(
            TranscriptUpdate(conversation_id=conversation_id, kind="appended", entry=entry)
        )
        return True

    def ingest_many(self, notifications: Iterable[Mapping[str, Any]]) -> int:
        """Ingest notifications in order and return how many were accepted."""
        return sum(1 for notification in notifications if self.ingest(notification))

    def transcript(self, conversation_id: str) -> list[TranscriptEntry]:
        return list(self._transcripts.get(conversation_id, []))

    def streaming(self, conversation_id: str) -> dict[DeltaKey, str]:
        """Return in-progress coalesced text of a conversation by key."""
        streams: dict[DeltaKey, str] = {}
        for key in self._coalescer.keys_for(conversation_id):
            text = self._coalescer.peek(key)
            if text is not None:
                streams[key] = text
        return streams

    def load_history(
        self,
        conversation_id: str,
        events: Iterable[Mapping[str, Any]],
    ) -> int:
        """Fill an empty transcript with recorded events from a resume call.

        Delta and malformed entries are skipped. History does not drive turn
        state or approvals; a transcript that already has entries is kept.
        """
        if self._transcripts.get(conversation_id):
            logger.debug("transcript of %s not empty; history ignored", conversation_id)
            return 0

        entries: list[TranscriptEntry] = []
        for msg in events:
            event_type = msg.get("type") if isinstance(msg, Mapping) else None
            if not isinstance(event_type, str) or not event_type or is_delta_event(event_type):
                continue
            entries.append(
                TranscriptEntry(
                    conversation_id=conversation_id,
                    type=event_type,
                    msg=dict(msg),
                    sequence=len(entries),
                )
            )
        self._transcripts[conversation_id] = entries
        self._notify(TranscriptUpdate(conversation_id=conversation_id, kind="loaded"))
        return len(entries)

    def clear_conversation(self, conversation_id: str) -> None:
        """Empty the transcript and tear down buffers and turn state."""
        if conversation_id in self._transcripts:
            self._transcripts[conversation_id] = []
        self._coalescer.drop_conversation(conversation_id)
        self._tracker.forget(conversation_id)
        self._notify(TranscriptUpdate(conversation_id=conversation_id, kind="cleared"))

    def forget(self, conversation_id: str) -> None:
        """Drop every piece of state kept for a conversation."""
        self._transcripts.pop(conversation_id, None)
        self._coalescer.drop_conversation(conversation_id)
        self._tracker.forget(conversation_id)
        self._approvals.drop_conversation(conversation_id)

    def backend_exited(self) -> None:
        """Flip every conversation to idle and discard approvals and buffers."""
        busy = self._tracker.busy_conversations()
        if busy:
            logger.info("backend exited with %d busy conversations", len(busy))
        self._tracker.reset_all()
        self._approvals.clear()
        self._coalescer.clear()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a transcript listener and return its unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _ingest_delta(
        self,
        conversation_id: str,
        event_type: str,
        msg: Mapping[str, Any],
        turn_id: str | None,
    ) -> bool:
        fragment = msg.get("delta")
        if not isinstance(fragment, str):
            logger.warning(
                "dropping %s without string delta for conversation %s",
                event_type,
                conversation_id,
            )
            return False

        key = DeltaKey(conversation_id, _item_id(msg), event_type)
        text = self._coalescer.accumulate(key, fragment)
        if turn_id:
            self._tracker.observe_turn_id(conversation_id, turn_id)
        self._notify(
            TranscriptUpdate(
                conversation_id=conversation_id,
                kind="delta",
                item_id=key.item_id,
                delta_kind=event_type,
                text=text,
            )
        )
        return True

    def _retire_buffers(
        self,
        conversation_id: str,
        event_type: str,
        msg: Mapping[str, Any],
    ) -> None:
        if is_turn_terminal(event_type):
            self._coalescer.drop_conversation(conversation_id)
            return
        kinds = RETIRED_DELTA_KINDS.get(event_type)
        if not kinds:
            return
        item_id = _item_id(msg)
        self._coalescer.drop_matching(
            conversation_id,
            kinds,
            item_id=item_id,
            any_item=item_id is None,
        )

    def _notify(self, update: TranscriptUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("transcript listener failed")


def _first_string(msg: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = msg.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _item_id(msg: Mapping[str, Any]) -> str | None:
    return _first_string(msg, _ITEM_ID_KEYS)


def _turn_id(msg: Mapping[str, Any], event_id: str | None) -> str | None:
    return _first_string(msg, _TURN_ID_KEYS) or event_id


def _event_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value:
        return value
    return None
