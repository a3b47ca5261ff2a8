from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from .errors import CodexError
from .models import ApprovalDecision, ApprovalRequest, DecisionResult, RequestId
from .protocol import (
    APPLY_PATCH_APPROVAL_METHOD,
    EXEC_APPROVAL_EVENT,
    EXEC_COMMAND_APPROVAL_METHOD,
    PATCH_APPROVAL_EVENT,
)

logger = logging.getLogger(__name__)

Responder = Callable[[ApprovalRequest, ApprovalDecision], Awaitable[None]]

_DECISION_ALIASES: dict[str, ApprovalDecision] = {
    "accept": "accept",
    "approved": "accept",
    "accept_for_session": "accept_for_session",
    "acceptForSession": "accept_for_session",
    "approved_for_session": "accept_for_session",
    "decline": "decline",
    "denied": "decline",
    "abort": "abort",
    "cancel": "abort",
}

_EVENT_KINDS = {
    EXEC_APPROVAL_EVENT: ("command_execution", EXEC_COMMAND_APPROVAL_METHOD),
    PATCH_APPROVAL_EVENT: ("file_change", APPLY_PATCH_APPROVAL_METHOD),
}

_ENVELOPE_FIELDS = frozenset(
    {"type", "request_id", "request_method", "turn_id", "item_id", "reason"}
)


def normalize_decision(decision: str) -> ApprovalDecision:
    """Map a decision name or protocol alias onto `ApprovalDecision`."""
    normalized = _DECISION_ALIASES.get(decision)
    if normalized is None:
        raise ValueError(f"unsupported approval decision: {decision!r}")
    return normalized


def approval_from_event(
    conversation_id: str,
    msg: Mapping[str, Any],
    *,
    turn_id: str | None = None,
) -> ApprovalRequest | None:
    """Build an `ApprovalRequest` from an approval event, if it can be answered."""
    kind_and_method = _EVENT_KINDS.get(str(msg.get("type")))
    if kind_and_method is None:
        return None
    request_id = msg.get("request_id")
    if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
        return None
    kind, default_method = kind_and_method

    method = msg.get("request_method")
    item_id = msg.get("item_id")
    reason = msg.get("reason")
    msg_turn_id = msg.get("turn_id")
    return ApprovalRequest(
        request_id=request_id,
        conversation_id=conversation_id,
        kind=kind,  # type: ignore[arg-type]
        method=method if isinstance(method, str) else default_method,
        turn_id=msg_turn_id if isinstance(msg_turn_id, str) else turn_id,
        item_id=item_id if isinstance(item_id, str) else None,
        reason=reason if isinstance(reason, str) else None,
        detail={
            key: value
            for key, value in msg.items()
            if key not in _ENVELOPE_FIELDS and value is not None
        },
    )


class ApprovalQueue:
    """FIFO of approval requests the agent is blocked on.

    `current()` is always the oldest undecided request. A decision is sent
    through the responder once per attempt; success removes the entry,
    failure leaves it in place for a retry.
    """

    def __init__(self, responder: Responder) -> None:
        self._responder = responder
        self._requests: list[ApprovalRequest] = []
        self._in_flight: set[RequestId] = set()

    def __len__(self) -> int:
        return len(self._requests)

    def enqueue(self, request: ApprovalRequest) -> bool:
        """Append a request; returns False for an id that is already queued."""
        if self.get(request.request_id) is not None:
            logger.debug("ignoring duplicate approval request %r", request.request_id)
            return False
        self._requests.append(request)
        logger.info(
            "approval %r queued for conversation %s (%s)",
            request.request_id,
            request.conversation_id,
            request.kind,
        )
        return True

    def current(self) -> ApprovalRequest | None:
        return self._requests[0] if self._requests else None

    def get(self, request_id: RequestId) -> ApprovalRequest | None:
        for request in self._requests:
            if request.request_id == request_id:
                return request
        return None

    def pending(self, conversation_id: str | None = None) -> list[ApprovalRequest]:
        """Return queued requests in arrival order, optionally for one conversation."""
        if conversation_id is None:
            return list(self._requests)
        return [r for r in self._requests if r.conversation_id == conversation_id]

    async def decide(self, request_id: RequestId, decision: str) -> DecisionResult:
        """Answer one request; deciding an id that is not queued is a no-op.

        The id is looked up before the decision is validated, so a repeat call
        for an answered request returns `unknown` whatever decision it carries.
        An unrecognized decision for a queued request raises `ValueError`.
        """
        request = self.get(request_id)
        if request is None:
            return DecisionResult(request_id=request_id, status="unknown")
        if request_id in self._in_flight:
            return DecisionResult(request_id=request_id, status="in_flight")
        normalized = normalize_decision(decision)

        self._in_flight.add(request_id)
        try:
            await self._responder(request, normalized)
        except CodexError as exc:
            logger.warning("approval %r decision failed: %s", request_id, exc)
            return DecisionResult(
                request_id=request_id,
                status="failed",
                decision=normalized,
                error=str(exc),
            )
        finally:
            self._in_flight.discard(request_id)

        self._requests = [r for r in self._requests if r.request_id != request_id]
        logger.info("approval %r resolved: %s", request_id, normalized)
        return DecisionResult(request_id=request_id, status="resolved", decision=normalized)

    def drop_conversation(self, conversation_id: str) -> int:
        before = len(self._requests)
        self._requests = [r for r in self._requests if r.conversation_id != conversation_id]
        return before - len(self._requests)

    def clear(self) -> None:
        if self._requests:
            logger.info("discarding %d pending approvals", len(self._requests))
        self._requests.clear()
