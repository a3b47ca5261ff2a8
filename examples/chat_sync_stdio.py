#!/usr/bin/env python3
"""Drive a Codex app-server conversation through ChatSync over stdio.

This example demonstrates:
- lazily created conversation per working directory
- transcript updates streamed through a subscriber
- approval requests answered from the command line policy
- interrupting a turn after a deadline
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shlex
import sys

from codex_chat_sync import (
    ChatSync,
    ClientSettings,
    CodexError,
    ConversationConfig,
    TranscriptUpdate,
)

DEFAULT_PROMPTS = [
    "List the files in this directory.",
    "Summarize what this project does in two sentences.",
]

_TURN_END_TYPES = {"task_complete", "turn_aborted", "error"}


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the stdio example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument(
        "--cmd",
        help="Command used to launch app-server, e.g. 'codex app-server'.",
    )
    parser.add_argument(
        "--cwd",
        default=os.getcwd(),
        help="Working directory; also used as the conversation context key.",
    )
    parser.add_argument(
        "--approve",
        choices=("accept", "accept_for_session", "decline", "abort"),
        default="decline",
        help="Decision applied to every approval request.",
    )
    parser.add_argument(
        "--turn-timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for a turn before interrupting it.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _print_update(update: TranscriptUpdate) -> None:
    if update.kind != "appended" or update.entry is None:
        return
    entry = update.entry
    msg = entry.msg
    if entry.type == "user_message":
        print(f"\n[user] {msg.get('message', '')}")
    elif entry.type == "agent_message":
        print(f"[assistant] {msg.get('message', '')}")
    elif entry.type == "exec_command_end":
        print(f"[exec] exit_code={msg.get('exit_code')}")
    elif entry.type in ("exec_approval_request", "apply_patch_approval_request"):
        print(f"[approval] {entry.type} request_id={msg.get('request_id')}")
    elif entry.type in ("error", "stream_error"):
        print(f"[error] {msg.get('message', '')}", file=sys.stderr)


async def _run_turn(
    chat: ChatSync,
    cwd: str,
    prompt: str,
    *,
    decision: str,
    turn_timeout: float,
) -> bool:
    turn_done = asyncio.Event()
    approval_seen = asyncio.Event()

    def _watch(update: TranscriptUpdate) -> None:
        if update.entry is None:
            return
        if update.entry.type in _TURN_END_TYPES:
            turn_done.set()
        elif update.entry.type.endswith("_approval_request"):
            approval_seen.set()

    unsubscribe = chat.subscribe(_watch)
    try:
        result = await chat.send(cwd, prompt)
        if not result.ok:
            print(f"[error] send failed: {result.error}", file=sys.stderr)
            return False

        deadline = asyncio.get_running_loop().time() + turn_timeout
        while not turn_done.is_set():
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                interrupted = await chat.interrupt(result.conversation_id or "")
                print(f"[interrupt] {interrupted.status}", file=sys.stderr)
                return False
            waiter = asyncio.ensure_future(approval_seen.wait())
            done_waiter = asyncio.ensure_future(turn_done.wait())
            await asyncio.wait(
                {waiter, done_waiter},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
            waiter.cancel()
            done_waiter.cancel()
            approval_seen.clear()

            while (request := chat.current_approval()) is not None:
                answered = await chat.decide(request.request_id, decision)
                print(f"[approval] {request.request_id} -> {answered.status}")
                if not answered.ok:
                    break
        return True
    finally:
        unsubscribe()


async def run_session(args: argparse.Namespace) -> int:
    """Send each prompt as one turn and print the transcript as it grows."""
    settings = ClientSettings.from_env()
    if args.cmd:
        settings.command = shlex.split(args.cmd)

    chat = ChatSync.from_settings(
        settings,
        defaults=ConversationConfig(approval_policy="on-request"),
    )
    chat.subscribe(_print_update)
    try:
        async with chat:
            for prompt in args.prompts or DEFAULT_PROMPTS:
                ok = await _run_turn(
                    chat,
                    args.cwd,
                    prompt,
                    decision=args.approve,
                    turn_timeout=args.turn_timeout,
                )
                if not ok:
                    return 1
            conversation_id = chat.directory.active_conversation(args.cwd)
            if conversation_id is not None:
                record = chat.directory.get(conversation_id)
                preview = record.preview if record is not None else ""
                print(f"\n[meta] conversation_id={conversation_id} preview={preview!r}")
        return 0
    except CodexError as exc:
        print(f"[error] {exc.__class__.__name__}: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        return 130


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()
