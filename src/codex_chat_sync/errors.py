from __future__ import annotations

from typing import Any


class CodexError(Exception):
    """Base exception for the codex-chat-sync package."""


class CodexTransportError(CodexError):
    """Raised when the underlying transport fails or disconnects unexpectedly."""


class BackendExitedError(CodexTransportError):
    """Raised for work abandoned because the app-server process went away."""


class CodexTimeoutError(CodexError):
    """Raised when a request exceeds its timeout."""


class CodexProtocolError(CodexError):
    """Raised when JSON-RPC or app-server protocol reports an error."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class ConversationNotFoundError(CodexProtocolError):
    """Raised when the backend no longer knows the target conversation."""


class TurnNotFoundError(CodexProtocolError):
    """Raised when the backend has no running turn with the given id."""
