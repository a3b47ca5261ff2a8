from __future__ import annotations

import logging
from collections.abc import Iterable

from .models import DeltaKey

logger = logging.getLogger(__name__)


class DeltaCoalescer:
    """Scratch buffers that join streaming fragments per `DeltaKey`.

    Fragments for one key are concatenated in arrival order. Keys carry the
    delta kind, so reasoning and answer streams of the same item stay apart.
    Buffers never reach the transcript; they are retired by `flush`/`drop`
    when the authoritative final event arrives or the conversation goes away.
    """

    def __init__(self) -> None:
        self._buffers: dict[DeltaKey, list[str]] = {}

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, key: object) -> bool:
        return key in self._buffers

    def accumulate(self, key: DeltaKey, fragment: str) -> str:
        """Append one fragment and return the current coalesced value."""
        parts = self._buffers.setdefault(key, [])
        parts.append(fragment)
        return "".join(parts)

    def peek(self, key: DeltaKey) -> str | None:
        """Return the coalesced value without retiring the buffer."""
        parts = self._buffers.get(key)
        if parts is None:
            return None
        return "".join(parts)

    def flush(self, key: DeltaKey) -> str | None:
        """Retire the buffer and return its coalesced value."""
        parts = self._buffers.pop(key, None)
        if parts is None:
            return None
        return "".join(parts)

    def drop(self, key: DeltaKey) -> None:
        """Retire the buffer, discarding its content."""
        if self._buffers.pop(key, None) is not None:
            logger.debug("dropped delta buffer %s", key)

    def keys_for(self, conversation_id: str) -> list[DeltaKey]:
        """Return the live keys of one conversation in creation order."""
        return [key for key in self._buffers if key.conversation_id == conversation_id]

    def drop_matching(
        self,
        conversation_id: str,
        kinds: Iterable[str],
        *,
        item_id: str | None = None,
        any_item: bool = False,
    ) -> list[DeltaKey]:
        """Drop buffers of the given kinds for one item (or every item)."""
        wanted = frozenset(kinds)
        retired = [
            key
            for key in self.keys_for(conversation_id)
            if key.kind in wanted and (any_item or key.item_id == item_id)
        ]
        for key in retired:
            self.drop(key)
        return retired

    def drop_conversation(self, conversation_id: str) -> int:
        """Drop every buffer of one conversation and return how many were live."""
        keys = self.keys_for(conversation_id)
        for key in keys:
            self.drop(key)
        return len(keys)

    def clear(self) -> None:
        self._buffers.clear()
