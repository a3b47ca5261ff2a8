from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import pytest

from codex_chat_sync.backend import Backend
from codex_chat_sync.models import (
    ApprovalDecision,
    ApprovalRequest,
    ConversationConfig,
    ConversationPage,
    CreatedConversation,
    ResumedConversation,
)
from codex_chat_sync.protocol import (
    BACKEND_EXITED_METHOD,
    JSONRPC_VERSION,
    make_event_notification,
)


class FakeBackend(Backend):
    """In-memory backend recording every outbound call.

    `*_errors` lists are consumed front to back: each call pops one entry and
    raises it when it is an exception.
    """

    def __init__(self, *, create_delay: float = 0.01) -> None:
        self.create_delay = create_delay
        self.echo_user_messages = True
        self.started = False
        self.closed = False

        self.created: list[ConversationConfig | None] = []
        self.sent: list[tuple[str, list[dict[str, Any]]]] = []
        self.interrupts: list[tuple[str, str]] = []
        self.answers: list[tuple[Any, ApprovalDecision]] = []
        self.resumed: list[str] = []

        self.create_errors: list[BaseException | None] = []
        self.send_errors: list[BaseException | None] = []
        self.interrupt_errors: list[BaseException | None] = []
        self.answer_errors: list[BaseException | None] = []

        self.history: list[dict[str, Any]] = []
        self.page = ConversationPage()
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._next_id = 1

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)

    def notifications(self) -> AsyncIterator[dict[str, Any]]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            payload = await self._queue.get()
            if payload is None:
                return
            yield payload

    def push(self, notification: Mapping[str, Any]) -> None:
        self._queue.put_nowait(dict(notification))

    def push_event(
        self,
        conversation_id: str,
        msg: Mapping[str, Any],
        event_id: str | None = None,
    ) -> None:
        self.push(make_event_notification(conversation_id, msg, event_id=event_id))

    def exit(self, message: str = "process exited") -> None:
        self.push(
            {
                "jsonrpc": JSONRPC_VERSION,
                "method": BACKEND_EXITED_METHOD,
                "params": {"message": message},
            }
        )

    async def create_conversation(
        self,
        config: ConversationConfig | None = None,
    ) -> CreatedConversation:
        self.created.append(config)
        await asyncio.sleep(self.create_delay)
        _raise_next(self.create_errors)
        conversation_id = f"conv-{self._next_id}"
        self._next_id += 1
        return CreatedConversation(
            conversation_id=conversation_id,
            rollout_path=f"/rollouts/{conversation_id}.jsonl",
            model="gpt-test",
        )

    async def send_message(
        self,
        conversation_id: str,
        items: Sequence[dict[str, Any]],
    ) -> None:
        self.sent.append((conversation_id, [dict(item) for item in items]))
        _raise_next(self.send_errors)
        if self.echo_user_messages:
            text = "".join(item["data"]["text"] for item in items)
            self.push_event(conversation_id, {"type": "user_message", "message": text})

    async def interrupt_turn(self, conversation_id: str, turn_id: str) -> None:
        self.interrupts.append((conversation_id, turn_id))
        _raise_next(self.interrupt_errors)

    async def respond_approval(
        self,
        request: ApprovalRequest,
        decision: ApprovalDecision,
    ) -> None:
        self.answers.append((request.request_id, decision))
        _raise_next(self.answer_errors)

    async def list_conversations(
        self,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ConversationPage:
        return self.page

    async def resume_conversation(
        self,
        conversation_id: str,
        *,
        path: str | None = None,
        config: ConversationConfig | None = None,
    ) -> ResumedConversation:
        self.resumed.append(conversation_id)
        return ResumedConversation(
            conversation_id=conversation_id,
            model="gpt-test",
            history=list(self.history),
        )


def _raise_next(errors: list[BaseException | None]) -> None:
    if errors:
        error = errors.pop(0)
        if error is not None:
            raise error


async def settle(rounds: int = 5) -> None:
    """Let background tasks (pump, deferred interrupts) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
