from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import CodexError, TurnNotFoundError
from .models import InterruptResult, TurnState
from .protocol import TURN_START_EVENT_TYPES, is_busy_off

logger = logging.getLogger(__name__)

Interrupter = Callable[[str, str], Awaitable[None]]


class TurnTracker:
    """Busy state, active turn id and pending interrupts per conversation.

    Turn ids are assigned by the backend after the send call returns, so an
    interrupt requested before the id is known is parked on the conversation
    and fired as soon as the first turn id shows up. A terminal event always
    wins: it clears busy state, the turn id and any parked interrupt.
    """

    def __init__(self, interrupter: Interrupter) -> None:
        self._interrupter = interrupter
        self._states: dict[str, TurnState] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._owed: list[tuple[str, str]] = []

    def state(self, conversation_id: str) -> TurnState:
        """Return a snapshot of the conversation's turn state."""
        state = self._states.get(conversation_id)
        if state is None:
            return TurnState()
        return TurnState(
            busy=state.busy,
            turn_id=state.turn_id,
            pending_interrupt=state.pending_interrupt,
        )

    def is_busy(self, conversation_id: str) -> bool:
        state = self._states.get(conversation_id)
        return state is not None and state.busy

    def busy_conversations(self) -> list[str]:
        return [cid for cid, state in self._states.items() if state.busy]

    def begin_turn(self, conversation_id: str) -> None:
        """Mark a turn as started (explicit send or `task_started`)."""
        state = self._states.setdefault(conversation_id, TurnState())
        if state.busy:
            return
        state.busy = True
        state.turn_id = None
        state.pending_interrupt = False
        logger.debug("conversation %s busy", conversation_id)

    def end_turn(self, conversation_id: str) -> None:
        """Return the conversation to idle, forgetting any parked interrupt."""
        state = self._states.get(conversation_id)
        if state is None:
            return
        if state.busy or state.pending_interrupt:
            logger.debug("conversation %s idle", conversation_id)
        state.busy = False
        state.turn_id = None
        state.pending_interrupt = False

    def observe(
        self,
        conversation_id: str,
        event_type: str,
        turn_id: str | None = None,
    ) -> None:
        """Apply one finalized event to the conversation's turn state."""
        if is_busy_off(event_type):
            self.end_turn(conversation_id)
            return
        if event_type in TURN_START_EVENT_TYPES:
            self.begin_turn(conversation_id)
        if turn_id:
            self.observe_turn_id(conversation_id, turn_id)

    def observe_turn_id(self, conversation_id: str, turn_id: str) -> None:
        """Record the first turn id seen while busy and fire a parked interrupt."""
        state = self._states.get(conversation_id)
        if state is None or not state.busy or state.turn_id is not None:
            return
        state.turn_id = turn_id
        logger.debug("conversation %s running turn %s", conversation_id, turn_id)
        if not state.pending_interrupt:
            return

        logger.info(
            "sending deferred interrupt for conversation %s turn %s",
            conversation_id,
            turn_id,
        )
        self.end_turn(conversation_id)
        self._dispatch_interrupt(conversation_id, turn_id)

    async def interrupt(self, conversation_id: str) -> InterruptResult:
        """Interrupt the running turn, or park the request until its id is known."""
        state = self._states.get(conversation_id)
        if state is None or not state.busy:
            return InterruptResult(conversation_id=conversation_id, status="idle")

        if state.turn_id is None:
            state.pending_interrupt = True
            logger.debug("interrupt for conversation %s deferred", conversation_id)
            return InterruptResult(conversation_id=conversation_id, status="deferred")

        turn_id = state.turn_id
        try:
            await self._interrupter(conversation_id, turn_id)
        except TurnNotFoundError:
            logger.info("turn %s already finished; clearing busy state", turn_id)
            self._end_if_current(conversation_id, turn_id)
            return InterruptResult(
                conversation_id=conversation_id,
                status="idle",
                turn_id=turn_id,
            )
        except CodexError as exc:
            logger.warning("interrupt for turn %s failed: %s", turn_id, exc)
            return InterruptResult(
                conversation_id=conversation_id,
                status="failed",
                turn_id=turn_id,
                error=str(exc),
            )

        self._end_if_current(conversation_id, turn_id)
        return InterruptResult(conversation_id=conversation_id, status="sent", turn_id=turn_id)

    def forget(self, conversation_id: str) -> None:
        self._states.pop(conversation_id, None)

    def reset_all(self) -> None:
        """Flip every conversation to idle (backend went away)."""
        for conversation_id in list(self._states):
            self.end_turn(conversation_id)

    async def drain(self) -> None:
        """Send owed interrupts and wait for background interrupt calls."""
        owed, self._owed = self._owed, []
        for conversation_id, turn_id in owed:
            self._dispatch_interrupt(conversation_id, turn_id)
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background interrupt calls."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background_tasks.clear()

    def _end_if_current(self, conversation_id: str, turn_id: str) -> None:
        state = self._states.get(conversation_id)
        if state is not None and state.turn_id == turn_id:
            self.end_turn(conversation_id)

    def _dispatch_interrupt(self, conversation_id: str, turn_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "no running event loop; interrupt for turn %s owed until drain()",
                turn_id,
            )
            self._owed.append((conversation_id, turn_id))
            return
        task = loop.create_task(self._send_interrupt(conversation_id, turn_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _send_interrupt(self, conversation_id: str, turn_id: str) -> None:
        try:
            await self._interrupter(conversation_id, turn_id)
        except TurnNotFoundError:
            logger.debug("turn %s finished before the deferred interrupt", turn_id)
        except CodexError as exc:
            logger.warning("deferred interrupt for turn %s failed: %s", turn_id, exc)
