from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from codex_chat_sync.client import CodexClient
from codex_chat_sync.errors import (
    BackendExitedError,
    CodexProtocolError,
    ConversationNotFoundError,
    TurnNotFoundError,
)
from codex_chat_sync.models import ApprovalRequest, ConversationConfig
from codex_chat_sync.protocol import BACKEND_EXITED_METHOD
from codex_chat_sync.transport import Transport

Handler = Callable[[dict[str, Any]], Any]


class ScriptedTransport(Transport):
    """Answers client requests from per-method handlers."""

    def __init__(self, handlers: Mapping[str, Handler] | None = None) -> None:
        self.handlers: dict[str, Handler] = {
            "initialize": lambda params: {"userAgent": "codex-test"},
            "addConversationListener": lambda params: {"subscriptionId": "sub-1"},
        }
        if handlers:
            self.handlers.update(handlers)
        self.sent: list[dict[str, Any]] = []
        self.connect_calls = 0
        self.close_calls = 0
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    async def connect(self) -> None:
        self.connect_calls += 1

    async def send(self, payload: Mapping[str, Any]) -> None:
        message = dict(payload)
        self.sent.append(message)
        method = message.get("method")
        if method is None or "id" not in message:
            return
        handler = self.handlers.get(method)
        if handler is None:
            return
        try:
            result = handler(message.get("params") or {})
        except LookupError as exc:
            await self._incoming.put(
                {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32600, "message": str(exc)}}
            )
            return
        await self._incoming.put({"jsonrpc": "2.0", "id": message["id"], "result": result})

    async def recv(self) -> dict[str, Any]:
        item = await self._incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("method") == method]


async def _wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("timed out waiting for condition")


def test_initialize_opts_out_of_duplicate_approval_events() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        async with CodexClient(transport, request_timeout=1.0):
            (initialize,) = transport.requests("initialize")
        opt_out = initialize["params"]["capabilities"]["optOutNotificationMethods"]
        assert "codex/event/exec_approval_request" in opt_out
        assert "codex/event/apply_patch_approval_request" in opt_out
        assert initialize["params"]["clientInfo"]["name"] == "codex-chat-sync"

    asyncio.run(_run())


def test_create_conversation_subscribes_to_events() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            {
                "newConversation": lambda params: {
                    "conversationId": "conv-42",
                    "model": "gpt-5",
                    "rolloutPath": "/r/conv-42.jsonl",
                }
            }
        )
        async with CodexClient(transport, request_timeout=1.0) as client:
            created = await client.create_conversation(
                ConversationConfig(cwd="/repo", approval_policy="on-request")
            )

        assert created.conversation_id == "conv-42"
        assert created.rollout_path == "/r/conv-42.jsonl"
        assert created.model == "gpt-5"
        (new_conversation,) = transport.requests("newConversation")
        assert new_conversation["params"] == {"cwd": "/repo", "approvalPolicy": "on-request"}
        (listener,) = transport.requests("addConversationListener")
        assert listener["params"]["conversationId"] == "conv-42"

    asyncio.run(_run())


def test_send_and_interrupt_payloads() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            {
                "sendUserMessage": lambda params: {},
                "turn/interrupt": lambda params: {},
            }
        )
        async with CodexClient(transport, request_timeout=1.0) as client:
            await client.send_message("conv-1", [{"type": "text", "data": {"text": "hi"}}])
            await client.interrupt_turn("conv-1", "t1")

        (send,) = transport.requests("sendUserMessage")
        assert send["params"] == {
            "conversationId": "conv-1",
            "items": [{"type": "text", "data": {"text": "hi"}}],
        }
        (interrupt,) = transport.requests("turn/interrupt")
        assert interrupt["params"] == {"threadId": "conv-1", "turnId": "t1"}

    asyncio.run(_run())


@pytest.mark.parametrize(
    ("message", "error_type"),
    [
        ("conversation not found: conv-1", ConversationNotFoundError),
        ("thread not found", ConversationNotFoundError),
        ("turn not found", TurnNotFoundError),
        ("no active turn to interrupt", TurnNotFoundError),
        ("failed to return result", CodexProtocolError),
    ],
)
def test_backend_errors_are_classified(message: str, error_type: type[Exception]) -> None:
    def _fail(params: dict[str, Any]) -> Any:
        raise LookupError(message)

    async def _run() -> None:
        transport = ScriptedTransport({"sendUserMessage": _fail})
        async with CodexClient(transport, request_timeout=1.0) as client:
            with pytest.raises(error_type) as exc_info:
                await client.send_message("conv-1", [])
        assert type(exc_info.value) is error_type
        assert exc_info.value.code == -32600

    asyncio.run(_run())


def test_server_approval_request_is_emitted_and_answered() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        async with CodexClient(transport, request_timeout=1.0) as client:
            await transport._incoming.put(
                {
                    "jsonrpc": "2.0",
                    "id": 11,
                    "method": "execCommandApproval",
                    "params": {
                        "conversationId": "conv-1",
                        "callId": "call-1",
                        "command": ["pytest", "-q"],
                        "cwd": "/repo",
                        "reason": "run tests",
                    },
                }
            )
            notification = await asyncio.wait_for(
                anext(client.notifications()),
                timeout=1.0,
            )
            assert notification["method"] == "codex/event/exec_approval_request"
            params = notification["params"]
            assert params["conversationId"] == "conv-1"
            msg = params["msg"]
            assert msg["request_id"] == 11
            assert msg["request_method"] == "execCommandApproval"
            assert msg["call_id"] == "call-1"
            assert msg["command"] == ["pytest", "-q"]

            request = ApprovalRequest(
                request_id=11,
                conversation_id="conv-1",
                kind="command_execution",
                method="execCommandApproval",
            )
            await client.respond_approval(request, "accept_for_session")
            with pytest.raises(CodexProtocolError):
                await client.respond_approval(request, "accept")

        (answer,) = [m for m in transport.sent if m.get("id") == 11]
        assert answer["result"] == {"decision": "approved_for_session"}

    asyncio.run(_run())


def test_v2_file_change_approval_uses_v2_decisions() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        async with CodexClient(transport, request_timeout=1.0) as client:
            await transport._incoming.put(
                {
                    "jsonrpc": "2.0",
                    "id": "srv-7",
                    "method": "item/fileChange/requestApproval",
                    "params": {
                        "threadId": "thread-1",
                        "turnId": "turn-1",
                        "itemId": "item-1",
                        "grantRoot": "/repo",
                    },
                }
            )
            notification = await asyncio.wait_for(anext(client.notifications()), timeout=1.0)
            msg = notification["params"]["msg"]
            assert msg["type"] == "apply_patch_approval_request"
            assert msg["turn_id"] == "turn-1"
            assert msg["grant_root"] == "/repo"

            request = ApprovalRequest(
                request_id="srv-7",
                conversation_id="thread-1",
                kind="file_change",
                method="item/fileChange/requestApproval",
            )
            await client.respond_approval(request, "abort")

        (answer,) = [m for m in transport.sent if m.get("id") == "srv-7"]
        assert answer["result"] == {"decision": "cancel"}

    asyncio.run(_run())


def test_unknown_server_request_gets_method_not_found() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        async with CodexClient(transport, request_timeout=1.0):
            await transport._incoming.put(
                {"jsonrpc": "2.0", "id": 99, "method": "item/tool/call", "params": {}}
            )
            await _wait_for(lambda: any(m.get("id") == 99 for m in transport.sent))

        (response,) = [m for m in transport.sent if m.get("id") == 99]
        assert response["error"]["code"] == -32601

    asyncio.run(_run())


def test_non_event_notifications_are_not_queued() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        async with CodexClient(transport, request_timeout=1.0) as client:
            await transport._incoming.put(
                {"jsonrpc": "2.0", "method": "account/updated", "params": {}}
            )
            event = {
                "jsonrpc": "2.0",
                "method": "codex/event/task_started",
                "params": {"conversationId": "conv-1", "id": "0", "msg": {"type": "task_started"}},
            }
            await transport._incoming.put(event)
            received = await asyncio.wait_for(anext(client.notifications()), timeout=1.0)
        assert received == event

    asyncio.run(_run())


def test_transport_failure_emits_backend_exited_and_fails_pending() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        client = CodexClient(transport, request_timeout=5.0)
        await client.start()
        try:
            pending = asyncio.create_task(client.request("listConversations", {}))
            await _wait_for(lambda: bool(transport.requests("listConversations")))
            await transport._incoming.put(BackendExitedError("app-server closed stdout"))

            with pytest.raises(BackendExitedError):
                await asyncio.wait_for(pending, timeout=1.0)

            received = [n async for n in client.notifications()]
            assert [n["method"] for n in received] == [BACKEND_EXITED_METHOD]
            assert "closed stdout" in received[0]["params"]["message"]
        finally:
            await client.close()

    asyncio.run(_run())


def test_list_and_resume_conversations() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            {
                "listConversations": lambda params: {
                    "items": [
                        {"conversationId": "a", "preview": "first", "path": "/r/a.jsonl"},
                        {"preview": "missing id"},
                    ],
                    "nextCursor": "cursor-2",
                },
                "resumeConversation": lambda params: {
                    "conversationId": "a-2",
                    "model": "gpt-5",
                    "initialMessages": [
                        {"type": "user_message", "message": "hi"},
                        {"msg": {"type": "agent_message", "message": "hello"}},
                        "junk",
                    ],
                },
            }
        )
        async with CodexClient(transport, request_timeout=1.0) as client:
            page = await client.list_conversations(limit=10)
            resumed = await client.resume_conversation("a", path="/r/a.jsonl")

        assert [s.conversation_id for s in page.data] == ["a"]
        assert page.next_cursor == "cursor-2"
        assert transport.requests("listConversations")[0]["params"] == {"pageSize": 10}
        assert resumed.conversation_id == "a-2"
        assert [m["type"] for m in resumed.history] == ["user_message", "agent_message"]
        (resume,) = transport.requests("resumeConversation")
        assert resume["params"] == {"conversationId": "a", "path": "/r/a.jsonl"}
        listeners = transport.requests("addConversationListener")
        assert listeners[-1]["params"]["conversationId"] == "a-2"

    asyncio.run(_run())


def test_start_is_idempotent() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        client = CodexClient(transport, request_timeout=1.0)
        await client.start()
        await client.start()
        assert transport.connect_calls == 1
        assert len(transport.requests("initialize")) == 1
        await client.close()
        await client.close()
        assert transport.close_calls == 1

    asyncio.run(_run())


def test_async_with_started_client_does_not_reconnect() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        client = CodexClient(transport, request_timeout=1.0)
        await client.start()

        async with client as managed:
            assert managed is client

        assert transport.connect_calls == 1
        assert transport.close_calls == 1
        assert [n async for n in client.notifications()] == []

    asyncio.run(_run())
