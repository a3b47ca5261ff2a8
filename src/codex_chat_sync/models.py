from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, NamedTuple, TypeAlias

from pydantic import BaseModel, Field


RequestId: TypeAlias = int | str


class TranscriptEntry(BaseModel):
    """One finalized event persisted in a conversation transcript.

    Attributes:
        conversation_id: Conversation the event belongs to.
        event_id: Envelope `id` (submission/turn id) when the backend sent one.
        type: Event discriminator copied from `msg.type`.
        msg: The event message exactly as received.
        sequence: Zero-based position of the entry in its transcript.
    """

    conversation_id: str
    event_id: str | None = None
    type: str
    msg: dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0


class TranscriptUpdate(BaseModel):
    """Change notification delivered to pipeline subscribers.

    Attributes:
        conversation_id: Conversation that changed.
        kind: What happened (`appended`, `delta`, `cleared`, `loaded`).
        entry: Appended transcript entry for `appended` updates.
        item_id: Item id of the coalesced stream for `delta` updates.
        delta_kind: Delta event type for `delta` updates.
        text: Current coalesced text for `delta` updates.
    """

    conversation_id: str
    kind: Literal["appended", "delta", "cleared", "loaded"]
    entry: TranscriptEntry | None = None
    item_id: str | None = None
    delta_kind: str | None = None
    text: str | None = None


class ConversationRecord(BaseModel):
    """Directory entry for one backend conversation.

    Attributes:
        conversation_id: Backend-assigned conversation id.
        context_key: Grouping key (usually the working directory).
        preview: Short text shown in conversation lists.
        created_path: Rollout file path reported by the backend, if any.
        model: Model the backend selected for the conversation, if reported.
        created_at: Local creation or resumption time.
    """

    conversation_id: str
    context_key: str
    preview: str = ""
    created_path: str | None = None
    model: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CreatedConversation(BaseModel):
    """Result of a `newConversation` call."""

    conversation_id: str
    rollout_path: str | None = None
    model: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ConversationSummary(BaseModel):
    """One row of a `listConversations` page."""

    conversation_id: str
    preview: str = ""
    path: str | None = None
    timestamp: str | None = None


class ConversationPage(BaseModel):
    """A page of stored conversations plus the cursor for the next page."""

    data: list[ConversationSummary] = Field(default_factory=list)
    next_cursor: str | None = None


class ResumedConversation(BaseModel):
    """Result of `resumeConversation`.

    Attributes:
        conversation_id: Id of the live conversation (may differ from the
            requested one when the backend mints a new id on resume).
        model: Model reported by the backend, if any.
        history: Previously recorded event messages, oldest first.
        raw: Full raw response payload.
    """

    conversation_id: str
    model: str | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)


class SendResult(BaseModel):
    """Outcome of sending one user message.

    Attributes:
        ok: True when the backend acknowledged the message.
        conversation_id: Conversation that received the message (the
            replacement conversation when the original had vanished).
        recreated: True when the original conversation was replaced.
        error: Failure description when `ok` is False.
        restored_text: Message text handed back to the compose buffer on failure.
    """

    ok: bool
    conversation_id: str | None = None
    recreated: bool = False
    error: str | None = None
    restored_text: str | None = None


class InterruptResult(BaseModel):
    """Outcome of an interrupt request.

    Attributes:
        conversation_id: Target conversation.
        status: `sent` when the backend accepted the interrupt, `deferred`
            when no turn id is known yet, `idle` when nothing is running,
            `failed` when the backend call failed.
        turn_id: Turn id the interrupt was sent for, when known.
        error: Failure description for `failed`.
    """

    conversation_id: str
    status: Literal["sent", "deferred", "idle", "failed"]
    turn_id: str | None = None
    error: str | None = None


class DecisionResult(BaseModel):
    """Outcome of answering one approval request.

    Attributes:
        request_id: Approval request id.
        status: `resolved` on success, `failed` when the backend call failed
            (entry kept for retry), `unknown` for ids not pending, `in_flight`
            when another decision for the id is still being sent.
        decision: Normalized decision that was sent.
        error: Failure description for `failed`.
    """

    request_id: RequestId
    status: Literal["resolved", "failed", "unknown", "in_flight"]
    decision: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "resolved"


class DeltaKey(NamedTuple):
    """Identity of one coalesced fragment stream."""

    conversation_id: str
    item_id: str | None
    kind: str


@dataclass(slots=True)
class TurnState:
    """Per-conversation turn lifecycle state."""

    busy: bool = False
    turn_id: str | None = None
    pending_interrupt: bool = False


ApprovalKind: TypeAlias = Literal["command_execution", "file_change"]

#: Decision applied to one approval request.
#:
#: Values:
#: - ``"accept"``: run this one action.
#: - ``"accept_for_session"``: run it and stop asking for similar actions.
#: - ``"decline"``: refuse the action, let the agent continue.
#: - ``"abort"``: refuse the action and stop the turn.
ApprovalDecision: TypeAlias = Literal["accept", "accept_for_session", "decline", "abort"]


@dataclass(slots=True)
class ApprovalRequest:
    """Pending human decision the agent is blocked on."""

    request_id: RequestId
    conversation_id: str
    kind: ApprovalKind
    method: str
    turn_id: str | None = None
    item_id: str | None = None
    reason: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


class UnsetType:
    """Sentinel type representing an omitted configuration field."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"


UNSET = UnsetType()

#: Approval policy accepted by conversation configuration.
#:
#: Values:
#: - ``"untrusted"``: require approvals for untrusted actions.
#: - ``"on-failure"``: request approval when an action fails.
#: - ``"on-request"``: request approval only when model asks for it.
#: - ``"never"``: never request approval.
ApprovalPolicy: TypeAlias = Literal["untrusted", "on-failure", "on-request", "never"]

#: Sandbox mode accepted by `newConversation`.
SandboxMode: TypeAlias = Literal["read-only", "workspace-write", "danger-full-access"]


@dataclass(slots=True)
class ConversationConfig:
    """Parameters forwarded to `newConversation`.

    Use `UNSET` (default) to omit a field from the request payload.
    Use `None` to explicitly send JSON `null` where the protocol accepts it.

    Attributes:
        profile: Config profile (provider) name.
        model: Model id.
        model_provider: Model provider identifier.
        cwd: Working directory; also the default context key.
        approval_policy: Approval policy mode.
        sandbox: Sandbox mode.
        config: Free-form config overrides map.
        base_instructions: Base instruction text.
        include_plan_tool: Expose the plan tool to the agent.
        include_apply_patch_tool: Expose the apply-patch tool to the agent.
    """

    profile: str | None | UnsetType = UNSET
    model: str | None | UnsetType = UNSET
    model_provider: str | None | UnsetType = UNSET
    cwd: str | None | UnsetType = UNSET
    approval_policy: ApprovalPolicy | None | UnsetType = UNSET
    sandbox: SandboxMode | None | UnsetType = UNSET
    config: dict[str, Any] | None | UnsetType = UNSET
    base_instructions: str | None | UnsetType = UNSET
    include_plan_tool: bool | None | UnsetType = UNSET
    include_apply_patch_tool: bool | None | UnsetType = UNSET
