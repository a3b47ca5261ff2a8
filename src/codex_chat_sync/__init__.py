import logging

from .approvals import ApprovalQueue
from .backend import Backend
from .client import CodexClient
from .coalescer import DeltaCoalescer
from .config import ClientSettings
from .directory import ConversationDirectory
from .errors import (
    BackendExitedError,
    CodexError,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
    ConversationNotFoundError,
    TurnNotFoundError,
)
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    ConversationConfig,
    ConversationPage,
    ConversationRecord,
    DecisionResult,
    DeltaKey,
    InterruptResult,
    ResumedConversation,
    SendResult,
    TranscriptEntry,
    TranscriptUpdate,
    TurnState,
    UNSET,
)
from .pipeline import EventPipeline
from .session import ChatSync
from .turns import TurnTracker

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ApprovalDecision",
    "ApprovalQueue",
    "ApprovalRequest",
    "Backend",
    "BackendExitedError",
    "ChatSync",
    "ClientSettings",
    "CodexClient",
    "CodexError",
    "CodexProtocolError",
    "CodexTimeoutError",
    "CodexTransportError",
    "ConversationConfig",
    "ConversationDirectory",
    "ConversationNotFoundError",
    "ConversationPage",
    "ConversationRecord",
    "DecisionResult",
    "DeltaCoalescer",
    "DeltaKey",
    "EventPipeline",
    "InterruptResult",
    "ResumedConversation",
    "SendResult",
    "TranscriptEntry",
    "TranscriptUpdate",
    "TurnNotFoundError",
    "TurnState",
    "TurnTracker",
    "UNSET",
]
