from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import Any

from .models import (
    ApprovalDecision,
    ApprovalRequest,
    ConversationConfig,
    ConversationPage,
    CreatedConversation,
    ResumedConversation,
)


class Backend(ABC):
    """Outbound calls and inbound notification stream of an agent backend.

    Implementations raise `CodexTransportError` when a call cannot reach the
    backend, `ConversationNotFoundError` / `TurnNotFoundError` for stale
    references, and `CodexProtocolError` for other backend-reported errors.
    """

    @abstractmethod
    async def start(self) -> None:
        """Connect to the backend and perform any handshake."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        raise NotImplementedError

    @abstractmethod
    def notifications(self) -> AsyncIterator[dict[str, Any]]:
        """Yield inbound notifications in arrival order until the backend closes."""
        raise NotImplementedError

    @abstractmethod
    async def create_conversation(
        self,
        config: ConversationConfig | None = None,
    ) -> CreatedConversation:
        """Create a conversation and subscribe to its events."""
        raise NotImplementedError

    @abstractmethod
    async def send_message(
        self,
        conversation_id: str,
        items: Sequence[dict[str, Any]],
    ) -> None:
        """Send user input items to a conversation."""
        raise NotImplementedError

    @abstractmethod
    async def interrupt_turn(self, conversation_id: str, turn_id: str) -> None:
        """Ask the backend to stop a running turn."""
        raise NotImplementedError

    @abstractmethod
    async def respond_approval(
        self,
        request: ApprovalRequest,
        decision: ApprovalDecision,
    ) -> None:
        """Answer a pending approval request."""
        raise NotImplementedError

    @abstractmethod
    async def list_conversations(
        self,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ConversationPage:
        """List stored conversations."""
        raise NotImplementedError

    @abstractmethod
    async def resume_conversation(
        self,
        conversation_id: str,
        *,
        path: str | None = None,
        config: ConversationConfig | None = None,
    ) -> ResumedConversation:
        """Resume a stored conversation and subscribe to its events."""
        raise NotImplementedError


def text_input(text: str) -> dict[str, Any]:
    """Build one text `InputItem` for `send_message`."""
    return {"type": "text", "data": {"text": text}}
