from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from .backend import Backend
from .config import ClientSettings, conversation_config_to_params
from .errors import (
    BackendExitedError,
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
    ConversationSummary,
    CreatedConversation,
    RequestId,
    ResumedConversation,
)
from .protocol import (
    ADD_CONVERSATION_LISTENER_METHOD,
    APPROVAL_REQUEST_METHODS,
    BACKEND_EXITED_METHOD,
    CONVERSATION_EVENT_PREFIX,
    DEFAULT_OPT_OUT_NOTIFICATION_METHODS,
    EXEC_APPROVAL_EVENT,
    EXEC_COMMAND_APPROVAL_METHOD,
    INITIALIZE_METHOD,
    ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
    JSONRPC_VERSION,
    LEGACY_APPROVAL_METHODS,
    LIST_CONVERSATIONS_METHOD,
    NEW_CONVERSATION_METHOD,
    PATCH_APPROVAL_EVENT,
    RESUME_CONVERSATION_METHOD,
    SEND_USER_MESSAGE_METHOD,
    TURN_INTERRUPT_METHOD,
    extract_error,
    is_conversation_not_found,
    is_response_message,
    is_turn_not_found,
    make_error_response,
    make_request,
    make_result_response,
)
from .transport import StdioTransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

_STOP = object()


class CodexClient(Backend):
    """Async JSON-RPC client for the Codex app-server conversation API."""

    def __init__(
        self,
        transport: Transport,
        *,
        request_timeout: float = 30.0,
        client_name: str = "codex-chat-sync",
    ) -> None:
        """Create a client bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            request_timeout: Default timeout for request/response calls.
            client_name: Name reported in the initialize handshake.
        """
        self._transport = transport
        self._request_timeout = request_timeout
        self._client_name = client_name
        self._initialized = False

        self._next_request_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._pending_server_requests: dict[RequestId, str] = {}
        self._notifications: asyncio.Queue[Any] = asyncio.Queue()

        self._send_lock = asyncio.Lock()
        self._receiver_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False

    @classmethod
    def connect_stdio(
        cls,
        *,
        command: Sequence[str] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float = 30.0,
    ) -> CodexClient:
        """Create an unstarted client that spawns the app-server over stdio."""
        resolved_command = (
            list(command) if command is not None else ClientSettings.from_env().command
        )
        transport = StdioTransport(
            resolved_command,
            cwd=cwd,
            env=env,
            connect_timeout=connect_timeout,
        )
        return cls(transport, request_timeout=request_timeout)

    @classmethod
    def connect_websocket(
        cls,
        *,
        url: str | None = None,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float = 30.0,
    ) -> CodexClient:
        """Create an unstarted client configured for websocket transport."""
        settings = ClientSettings.from_env()
        resolved_url = url or settings.ws_url
        resolved_token = token or settings.token
        resolved_headers = dict(headers) if headers is not None else {}
        if resolved_token and "Authorization" not in resolved_headers:
            resolved_headers["Authorization"] = f"Bearer {resolved_token}"

        transport = WebSocketTransport(
            resolved_url,
            headers=resolved_headers,
            connect_timeout=connect_timeout,
        )
        return cls(transport, request_timeout=request_timeout)

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> CodexClient:
        """Create an unstarted client from resolved settings."""
        if settings.transport == "websocket":
            return cls.connect_websocket(
                url=settings.ws_url,
                token=settings.token,
                connect_timeout=settings.connect_timeout,
                request_timeout=settings.request_timeout,
            )
        return cls.connect_stdio(
            command=settings.command,
            connect_timeout=settings.connect_timeout,
            request_timeout=settings.request_timeout,
        )

    async def start(self) -> None:
        """Connect transport, start the receive loop and run the handshake once."""
        if self._closed:
            raise CodexTransportError("client is closed")
        if not self._started:
            await self._transport.connect()
            self._start_receiver()
            self._started = True
        if not self._initialized:
            await self.initialize()

    async def __aenter__(self) -> CodexClient:
        """Support `async with CodexClient(...)` usage."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Close client on context-manager exit."""
        await self.close()

    async def close(self) -> None:
        """Stop receive loop, fail pending requests, and close transport."""
        if self._closed:
            return
        self._closed = True

        if self._receiver_task is not None:
            self._receiver_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receiver_task
            self._receiver_task = None

        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(CodexTransportError("client is closing"))
        self._pending.clear()
        self._pending_server_requests.clear()
        self._notifications.put_nowait(_STOP)

        await self._transport.close()
        self._started = False

    async def initialize(
        self,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Perform the app-server initialize handshake.

        The default payload opts out of the `codex/event/*_approval_request`
        notifications, because approvals arrive as server requests which are
        re-emitted into the event stream with their JSON-RPC id.
        """
        payload = self._default_initialize_params()
        if params is not None:
            payload.update(dict(params))
        result = await self.request(INITIALIZE_METHOD, payload, timeout=timeout)
        self._initialized = True
        return result

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a JSON-RPC request and await response result."""
        if self._closed:
            raise CodexTransportError("client is closed")

        request_id = self._next_request_id
        self._next_request_id += 1

        message = make_request(request_id, method, dict(params) if params is not None else None)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[request_id] = future

        try:
            async with self._send_lock:
                await self._transport.send(message)
        except CodexTransportError:
            self._pending.pop(request_id, None)
            raise

        timeout_seconds = timeout if timeout is not None else self._request_timeout
        try:
            response = await asyncio.wait_for(future, timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._pending.pop(request_id, None)
            raise CodexTimeoutError(
                f"request timed out for method={method!r} after {timeout_seconds:.1f}s"
            ) from exc

        error = extract_error(response)
        if error is not None:
            raise _protocol_error(method, error)
        return response.get("result")

    def notifications(self) -> AsyncIterator[dict[str, Any]]:
        """Yield conversation notifications until the client closes or the backend exits."""
        return self._iter_notifications()

    async def _iter_notifications(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            payload = await self._notifications.get()
            if payload is _STOP:
                self._notifications.put_nowait(_STOP)
                return
            yield payload
            if payload.get("method") == BACKEND_EXITED_METHOD:
                return

    async def create_conversation(
        self,
        config: ConversationConfig | None = None,
    ) -> CreatedConversation:
        """Create a conversation with `newConversation` and subscribe to its events."""
        await self._ensure_initialized()
        result = await self.request(NEW_CONVERSATION_METHOD, conversation_config_to_params(config))
        conversation_id = _extract_conversation_id(result)
        if not conversation_id:
            raise CodexProtocolError("newConversation succeeded but no conversation id found")
        await self.add_conversation_listener(conversation_id)
        result_dict = result if isinstance(result, dict) else {}
        return CreatedConversation(
            conversation_id=conversation_id,
            rollout_path=_find_first_string_by_exact_keys(result_dict, {"rolloutpath"}),
            model=_optional_string(result_dict.get("model")),
            raw=result_dict,
        )

    async def add_conversation_listener(self, conversation_id: str) -> Any:
        """Subscribe to `codex/event/*` notifications of one conversation."""
        return await self.request(
            ADD_CONVERSATION_LISTENER_METHOD,
            {"conversationId": conversation_id, "experimentalRawEvents": False},
        )

    async def send_message(
        self,
        conversation_id: str,
        items: Sequence[dict[str, Any]],
    ) -> None:
        """Send user input items with `sendUserMessage`."""
        await self._ensure_initialized()
        await self.request(
            SEND_USER_MESSAGE_METHOD,
            {"conversationId": conversation_id, "items": [dict(item) for item in items]},
        )

    async def interrupt_turn(self, conversation_id: str, turn_id: str) -> None:
        """Send best-effort `turn/interrupt` for a running turn."""
        await self.request(
            TURN_INTERRUPT_METHOD,
            {"threadId": conversation_id, "turnId": turn_id},
        )

    async def list_conversations(
        self,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ConversationPage:
        """Return one page of stored conversations."""
        await self._ensure_initialized()
        params: dict[str, Any] = {}
        if cursor is not None:
            params["cursor"] = cursor
        if limit is not None:
            params["pageSize"] = limit
        result = await self.request(LIST_CONVERSATIONS_METHOD, params)
        if not isinstance(result, Mapping):
            return ConversationPage()

        rows = result.get("items")
        if not isinstance(rows, list):
            rows = result.get("data")
        summaries: list[ConversationSummary] = []
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, Mapping):
                continue
            conversation_id = _optional_string(row.get("conversationId"))
            if not conversation_id:
                continue
            summaries.append(
                ConversationSummary(
                    conversation_id=conversation_id,
                    preview=_optional_string(row.get("preview")) or "",
                    path=_optional_string(row.get("path")),
                    timestamp=_optional_string(row.get("timestamp")),
                )
            )
        return ConversationPage(
            data=summaries,
            next_cursor=_optional_string(result.get("nextCursor")),
        )

    async def resume_conversation(
        self,
        conversation_id: str,
        *,
        path: str | None = None,
        config: ConversationConfig | None = None,
    ) -> ResumedConversation:
        """Resume a stored conversation and subscribe to its events."""
        await self._ensure_initialized()
        params: dict[str, Any] = {"conversationId": conversation_id}
        if path is not None:
            params["path"] = path
        overrides = conversation_config_to_params(config)
        if overrides:
            params["overrides"] = overrides
        result = await self.request(RESUME_CONVERSATION_METHOD, params)
        result_dict = result if isinstance(result, dict) else {}

        resumed_id = _extract_conversation_id(result_dict) or conversation_id
        await self.add_conversation_listener(resumed_id)
        return ResumedConversation(
            conversation_id=resumed_id,
            model=_optional_string(result_dict.get("model")),
            history=_extract_history(result_dict),
            raw=result_dict,
        )

    async def respond_approval(
        self,
        request: ApprovalRequest,
        decision: ApprovalDecision,
    ) -> None:
        """Answer one pending server approval request."""
        method = self._pending_server_requests.get(request.request_id)
        if method is None:
            raise CodexProtocolError("approval request is no longer pending")

        response = make_result_response(
            request.request_id,
            {"decision": _encode_approval_decision(method, decision)},
        )
        async with self._send_lock:
            await self._transport.send(response)
        self._pending_server_requests.pop(request.request_id, None)

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    def _default_initialize_params(self) -> dict[str, Any]:
        return {
            "clientInfo": {
                "name": self._client_name,
                "version": "0.1.0",
            },
            "capabilities": {
                "optOutNotificationMethods": list(DEFAULT_OPT_OUT_NOTIFICATION_METHODS),
            },
        }

    def _start_receiver(self) -> None:
        """Start background receive loop exactly once."""
        if self._receiver_task is not None:
            return
        self._receiver_task = asyncio.create_task(self._receiver_loop())

    async def _receiver_loop(self) -> None:
        """Route incoming transport messages to request futures or the notification queue."""
        try:
            while not self._closed:
                payload = await self._transport.recv()

                if is_response_message(payload):
                    response_id = payload.get("id")
                    if isinstance(response_id, int):
                        future = self._pending.pop(response_id, None)
                        if future is not None and not future.done():
                            future.set_result(payload)
                    continue

                method = payload.get("method")
                if not isinstance(method, str):
                    continue

                if "id" in payload and payload.get("id") is not None:
                    request_id = payload["id"]
                    if isinstance(request_id, (int, str)):
                        await self._handle_server_request(
                            request_id=request_id,
                            method=method,
                            payload=payload,
                        )
                    continue

                if not method.startswith(CONVERSATION_EVENT_PREFIX):
                    logger.debug("ignoring notification %s", method)
                    continue

                await self._notifications.put(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._closed:
                return
            logger.warning("app-server connection lost: %s", exc)
            exited = BackendExitedError(f"receiver loop failed: {exc}")
            for future in list(self._pending.values()):
                if not future.done():
                    future.set_exception(exited)
            self._pending.clear()
            self._pending_server_requests.clear()
            await self._notifications.put(
                {
                    "jsonrpc": JSONRPC_VERSION,
                    "method": BACKEND_EXITED_METHOD,
                    "params": {"message": str(exc)},
                }
            )

    async def _handle_server_request(
        self,
        *,
        request_id: RequestId,
        method: str,
        payload: dict[str, Any],
    ) -> None:
        if method not in APPROVAL_REQUEST_METHODS:
            error = make_error_response(
                request_id,
                -32601,
                "Client does not implement server-initiated requests.",
            )
            async with self._send_lock:
                await self._transport.send(error)
            return

        params = payload.get("params")
        notification = (
            _approval_event_notification(request_id, method, params)
            if isinstance(params, Mapping)
            else None
        )
        if notification is None:
            error = make_error_response(
                request_id,
                -32602,
                f"{method} received invalid params",
            )
            async with self._send_lock:
                await self._transport.send(error)
            return

        self._pending_server_requests[request_id] = method
        await self._notifications.put(notification)


def _protocol_error(method: str, error: Mapping[str, Any]) -> CodexProtocolError:
    code = error.get("code")
    message_text = str(error.get("message", "JSON-RPC error"))
    kwargs: dict[str, Any] = {
        "code": code if isinstance(code, int) else None,
        "data": error.get("data"),
    }
    message = f"{method} failed: {message_text}"
    if is_turn_not_found(message_text):
        return TurnNotFoundError(message, **kwargs)
    if is_conversation_not_found(message_text):
        return ConversationNotFoundError(message, **kwargs)
    return CodexProtocolError(message, **kwargs)


def _approval_event_notification(
    request_id: RequestId,
    method: str,
    params: Mapping[str, Any],
) -> dict[str, Any] | None:
    """Re-emit a server approval request as a conversation event notification."""
    conversation_id = _optional_string(params.get("conversationId")) or _optional_string(
        params.get("threadId")
    )
    if not conversation_id:
        return None

    is_command = method in (
        EXEC_COMMAND_APPROVAL_METHOD,
        ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
    )
    msg: dict[str, Any] = {
        "type": EXEC_APPROVAL_EVENT if is_command else PATCH_APPROVAL_EVENT,
        "request_id": request_id,
        "request_method": method,
        "call_id": _optional_string(params.get("callId")) or _optional_string(params.get("itemId")),
        "turn_id": _optional_string(params.get("turnId")),
        "item_id": _optional_string(params.get("itemId")),
        "reason": _optional_string(params.get("reason")),
    }
    if is_command:
        msg["command"] = params.get("command")
        msg["cwd"] = _optional_string(params.get("cwd"))
    else:
        msg["changes"] = params.get("fileChanges")
        msg["grant_root"] = _optional_string(params.get("grantRoot"))

    return {
        "jsonrpc": JSONRPC_VERSION,
        "method": f"{CONVERSATION_EVENT_PREFIX}{msg['type']}",
        "params": {"conversationId": conversation_id, "msg": msg},
    }


_LEGACY_DECISIONS = {
    "accept": "approved",
    "accept_for_session": "approved_for_session",
    "decline": "denied",
    "abort": "abort",
}

_V2_DECISIONS = {
    "accept": "accept",
    "accept_for_session": "acceptForSession",
    "decline": "decline",
    "abort": "cancel",
}


def _encode_approval_decision(method: str, decision: str) -> str:
    mapping = _LEGACY_DECISIONS if method in LEGACY_APPROVAL_METHODS else _V2_DECISIONS
    encoded = mapping.get(decision)
    if encoded is None:
        raise ValueError(f"unsupported approval decision: {decision!r}")
    return encoded


def _extract_conversation_id(payload: Any) -> str | None:
    """Extract conversation id from a nested response payload, best effort."""
    if not isinstance(payload, (dict, list)):
        return None
    direct = _find_first_string_by_exact_keys(
        payload,
        {"conversationid", "conversation_id", "threadid", "thread_id"},
    )
    if direct:
        return direct
    for key in ({"conversation"}, {"thread"}):
        nested = _find_first_dict_by_exact_key(payload, key)
        if nested:
            nested_id = _find_first_string_by_exact_keys(nested, {"id"})
            if nested_id:
                return nested_id
    return None


def _extract_history(result: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Return recorded event messages from a resume response, oldest first."""
    for key in ("initialMessages", "history", "events"):
        entries = result.get(key)
        if isinstance(entries, list):
            break
    else:
        return []

    history: list[dict[str, Any]] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        msg = entry.get("msg")
        if isinstance(msg, Mapping):
            history.append(dict(msg))
        elif isinstance(entry.get("type"), str):
            history.append(dict(entry))
    return history


def _optional_string(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _find_first_string_by_exact_keys(
    payload: Any,
    keys_lower: set[str],
) -> str | None:
    """Depth-first search for first string whose key matches provided names."""
    if isinstance(payload, Mapping):
        for key, value in payload.items():
            if key.lower() in keys_lower and isinstance(value, str):
                return value
        for value in payload.values():
            found = _find_first_string_by_exact_keys(value, keys_lower)
            if found is not None:
                return found
        return None

    if isinstance(payload, list):
        for item in payload:
            found = _find_first_string_by_exact_keys(item, keys_lower)
            if found is not None:
                return found

    return None


def _find_first_dict_by_exact_key(
    payload: Any,
    keys_lower: set[str],
) -> dict[str, Any] | None:
    """Depth-first search for first dict value under matching key name."""
    if isinstance(payload, Mapping):
        for key, value in payload.items():
            if key.lower() in keys_lower and isinstance(value, Mapping):
                return dict(value)
        for value in payload.values():
            found = _find_first_dict_by_exact_key(value, keys_lower)
            if found is not None:
                return found
        return None

    if isinstance(payload, list):
        for item in payload:
            found = _find_first_dict_by_exact_key(item, keys_lower)
            if found is not None:
                return found

    return None
