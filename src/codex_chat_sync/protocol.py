from __future__ import annotations

from collections.abc import Mapping
from typing import Any

# JSON-RPC protocol version used by Codex app-server envelopes.
JSONRPC_VERSION = "2.0"

# Client request methods.
INITIALIZE_METHOD = "initialize"
NEW_CONVERSATION_METHOD = "newConversation"
RESUME_CONVERSATION_METHOD = "resumeConversation"
LIST_CONVERSATIONS_METHOD = "listConversations"
ADD_CONVERSATION_LISTENER_METHOD = "addConversationListener"
SEND_USER_MESSAGE_METHOD = "sendUserMessage"
TURN_INTERRUPT_METHOD = "turn/interrupt"

# Server-initiated approval requests.
EXEC_COMMAND_APPROVAL_METHOD = "execCommandApproval"
APPLY_PATCH_APPROVAL_METHOD = "applyPatchApproval"
ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD = "item/commandExecution/requestApproval"
ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD = "item/fileChange/requestApproval"

LEGACY_APPROVAL_METHODS = frozenset(
    {
        EXEC_COMMAND_APPROVAL_METHOD,
        APPLY_PATCH_APPROVAL_METHOD,
    }
)
APPROVAL_REQUEST_METHODS = LEGACY_APPROVAL_METHODS | frozenset(
    {
        ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
        ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
    }
)

CONVERSATION_EVENT_PREFIX = "codex/event/"

# Synthetic notification queued when the transport fails or the process exits.
BACKEND_EXITED_METHOD = "__backend_exited__"

# Approval events are re-emitted from the server requests, which carry the
# JSON-RPC id needed to answer them.
DEFAULT_OPT_OUT_NOTIFICATION_METHODS = (
    "codex/event/exec_approval_request",
    "codex/event/apply_patch_approval_request",
)

EXEC_APPROVAL_EVENT = "exec_approval_request"
PATCH_APPROVAL_EVENT = "apply_patch_approval_request"
APPROVAL_EVENT_TYPES = frozenset({EXEC_APPROVAL_EVENT, PATCH_APPROVAL_EVENT})

TASK_STARTED_EVENT = "task_started"
TURN_START_EVENT_TYPES = frozenset({TASK_STARTED_EVENT})

# Events that end the turn currently in flight.
TURN_TERMINAL_EVENT_TYPES = frozenset(
    {
        "task_complete",
        "error",
        "stream_error",
        "turn_aborted",
    }
)

# Events after which the conversation is no longer considered busy.
BUSY_OFF_EVENT_TYPES = TURN_TERMINAL_EVENT_TYPES | APPROVAL_EVENT_TYPES

# Streaming fragment kinds mapped to the final event type that supersedes them.
DELTA_MERGE_TARGETS: Mapping[str, str] = {
    "agent_message_delta": "agent_message",
    "agent_message_content_delta": "agent_message",
    "agent_reasoning_delta": "agent_reasoning",
    "reasoning_content_delta": "agent_reasoning",
    "agent_reasoning_raw_content_delta": "agent_reasoning_raw_content",
    "reasoning_raw_content_delta": "agent_reasoning_raw_content",
    "exec_command_output_delta": "exec_command_end",
}

DELTA_EVENT_TYPES = frozenset(DELTA_MERGE_TARGETS)


def _invert_merge_targets() -> dict[str, frozenset[str]]:
    retired: dict[str, set[str]] = {}
    for delta_type, final_type in DELTA_MERGE_TARGETS.items():
        retired.setdefault(final_type, set()).add(delta_type)
    return {final_type: frozenset(kinds) for final_type, kinds in retired.items()}


# Final event type -> delta kinds whose buffers it retires.
RETIRED_DELTA_KINDS: Mapping[str, frozenset[str]] = _invert_merge_targets()

# Final events that update a conversation's preview text.
PREVIEW_FIELDS: Mapping[str, str] = {
    "user_message": "message",
    "agent_message": "message",
}


def make_request(
    request_id: int,
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC request envelope."""
    payload: dict[str, Any] = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
    }
    if params is not None:
        payload["params"] = params
    return payload


def make_error_response(
    request_id: int | str,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build a JSON-RPC error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error,
    }


def make_result_response(
    request_id: int | str,
    result: Any,
) -> dict[str, Any]:
    """Build a JSON-RPC success response envelope."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "result": result,
    }


def make_event_notification(
    conversation_id: str,
    msg: Mapping[str, Any],
    *,
    event_id: str | None = None,
) -> dict[str, Any]:
    """Build a `codex/event/<type>` notification for one event message."""
    params: dict[str, Any] = {"conversationId": conversation_id, "msg": dict(msg)}
    if event_id is not None:
        params["id"] = event_id
    return {
        "jsonrpc": JSONRPC_VERSION,
        "method": f"{CONVERSATION_EVENT_PREFIX}{msg.get('type', '')}",
        "params": params,
    }


def is_response_message(payload: dict[str, Any]) -> bool:
    """Return True when payload is a response (has id, no method)."""
    return "id" in payload and "method" not in payload


def extract_error(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return JSON-RPC error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def is_delta_event(event_type: str) -> bool:
    """Return True when the event type carries a streaming fragment."""
    return event_type in DELTA_EVENT_TYPES


def is_turn_terminal(event_type: str) -> bool:
    """Return True when the event type ends the turn in flight."""
    return event_type in TURN_TERMINAL_EVENT_TYPES


def is_busy_off(event_type: str) -> bool:
    """Return True when the event type clears a conversation's busy state."""
    return event_type in BUSY_OFF_EVENT_TYPES


def is_conversation_not_found(message: str) -> bool:
    """Return True when an error message reports a vanished conversation."""
    lowered = message.lower()
    if "conversation not found" in lowered or "thread not found" in lowered:
        return True
    return "not found" in lowered and ("conversation" in lowered or "thread" in lowered)


def is_turn_not_found(message: str) -> bool:
    """Return True when an error message reports an unknown or finished turn."""
    lowered = message.lower()
    return "turn not found" in lowered or "no active turn" in lowered
