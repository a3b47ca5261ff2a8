from __future__ import annotations

import asyncio

import pytest

from codex_chat_sync.approvals import ApprovalQueue, approval_from_event, normalize_decision
from codex_chat_sync.errors import CodexTransportError
from codex_chat_sync.models import ApprovalRequest

from conftest import FakeBackend


def _request(request_id: int | str, conversation_id: str = "c1") -> ApprovalRequest:
    return ApprovalRequest(
        request_id=request_id,
        conversation_id=conversation_id,
        kind="command_execution",
        method="execCommandApproval",
    )


def test_deciding_head_promotes_next_request(backend: FakeBackend) -> None:
    async def _run() -> None:
        queue = ApprovalQueue(backend.respond_approval)
        queue.enqueue(_request("r1"))
        queue.enqueue(_request("r2"))

        result = await queue.decide("r1", "denied")

        assert result.ok
        assert result.decision == "decline"
        current = queue.current()
        assert current is not None
        assert current.request_id == "r2"
        assert backend.answers == [("r1", "decline")]

    asyncio.run(_run())


def test_second_decision_is_a_noop(backend: FakeBackend) -> None:
    async def _run() -> None:
        queue = ApprovalQueue(backend.respond_approval)
        queue.enqueue(_request(1))

        first = await queue.decide(1, "accept")
        second = await queue.decide(1, "accept")

        assert first.status == "resolved"
        assert second.status == "unknown"
        assert backend.answers == [(1, "accept")]
        assert queue.current() is None

    asyncio.run(_run())


def test_repeat_decision_with_unrecognized_value_is_a_noop(backend: FakeBackend) -> None:
    async def _run() -> None:
        queue = ApprovalQueue(backend.respond_approval)
        queue.enqueue(_request(1))

        await queue.decide(1, "approved")
        repeat = await queue.decide(1, "maybe")

        assert repeat.status == "unknown"
        assert backend.answers == [(1, "accept")]

    asyncio.run(_run())


def test_failed_decision_keeps_request_at_head(backend: FakeBackend) -> None:
    async def _run() -> None:
        backend.answer_errors.append(CodexTransportError("connection reset"))
        queue = ApprovalQueue(backend.respond_approval)
        queue.enqueue(_request(1))
        queue.enqueue(_request(2))

        failed = await queue.decide(1, "accept_for_session")
        assert failed.status == "failed"
        assert failed.error == "connection reset"
        head = queue.current()
        assert head is not None and head.request_id == 1

        retried = await queue.decide(1, "accept_for_session")
        assert retried.ok
        assert backend.answers == [(1, "accept_for_session"), (1, "accept_for_session")]

    asyncio.run(_run())


def test_concurrent_decisions_for_one_request_make_one_call() -> None:
    async def _run() -> None:
        release = asyncio.Event()
        calls: list[object] = []

        async def slow_responder(request: ApprovalRequest, decision: str) -> None:
            calls.append((request.request_id, decision))
            await release.wait()

        queue = ApprovalQueue(slow_responder)
        queue.enqueue(_request(5))

        first = asyncio.create_task(queue.decide(5, "accept"))
        await asyncio.sleep(0)
        second = await queue.decide(5, "decline")
        release.set()

        assert second.status == "in_flight"
        assert (await first).ok
        assert calls == [(5, "accept")]

    asyncio.run(_run())


def test_duplicate_request_ids_are_ignored(backend: FakeBackend) -> None:
    queue = ApprovalQueue(backend.respond_approval)
    assert queue.enqueue(_request(1))
    assert not queue.enqueue(_request(1, conversation_id="c2"))
    assert len(queue) == 1


def test_drop_conversation_keeps_other_conversations(backend: FakeBackend) -> None:
    queue = ApprovalQueue(backend.respond_approval)
    queue.enqueue(_request(1, "c1"))
    queue.enqueue(_request(2, "c2"))
    queue.enqueue(_request(3, "c1"))

    assert queue.drop_conversation("c1") == 2
    assert [r.request_id for r in queue.pending()] == [2]
    assert queue.pending("c1") == []


@pytest.mark.parametrize(
    ("alias", "expected"),
    [
        ("approved", "accept"),
        ("acceptForSession", "accept_for_session"),
        ("approved_for_session", "accept_for_session"),
        ("denied", "decline"),
        ("cancel", "abort"),
        ("abort", "abort"),
    ],
)
def test_decision_aliases(alias: str, expected: str) -> None:
    assert normalize_decision(alias) == expected


def test_unknown_decision_raises(backend: FakeBackend) -> None:
    async def _run() -> None:
        queue = ApprovalQueue(backend.respond_approval)
        queue.enqueue(_request(1))
        with pytest.raises(ValueError):
            await queue.decide(1, "maybe")
        assert backend.answers == []

    asyncio.run(_run())


def test_approval_from_patch_event() -> None:
    request = approval_from_event(
        "c1",
        {
            "type": "apply_patch_approval_request",
            "request_id": "srv-3",
            "request_method": "item/fileChange/requestApproval",
            "turn_id": "t1",
            "item_id": "i1",
            "reason": "writes outside workspace",
            "changes": {"a.txt": {"add": {"content": "x"}}},
            "grant_root": None,
        },
    )

    assert request is not None
    assert request.kind == "file_change"
    assert request.method == "item/fileChange/requestApproval"
    assert request.turn_id == "t1"
    assert request.reason == "writes outside workspace"
    assert request.detail == {"changes": {"a.txt": {"add": {"content": "x"}}}}


def test_approval_from_event_without_request_id_is_none() -> None:
    assert approval_from_event("c1", {"type": "exec_approval_request", "call_id": "x"}) is None
    assert approval_from_event("c1", {"type": "agent_message", "request_id": 1}) is None
