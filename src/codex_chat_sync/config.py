from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, fields
from typing import Any, Literal

from .models import ConversationConfig, UnsetType

DEFAULT_WS_URL = "ws://127.0.0.1:8765"
DEFAULT_STDIO_COMMAND = ("codex", "app-server")


@dataclass(slots=True)
class ClientSettings:
    """Connection and behavior settings for `ChatSync.from_settings`.

    Attributes:
        transport: `stdio` to spawn the app-server, `websocket` to connect to one.
        command: Command argv used to start the app-server in stdio mode.
        ws_url: Websocket endpoint for websocket mode.
        token: Optional bearer token sent in websocket mode.
        connect_timeout: Timeout for process start or websocket handshake.
        request_timeout: Default timeout for request/response calls.
        preview_length: Maximum length of conversation preview text.
    """

    transport: Literal["stdio", "websocket"] = "stdio"
    command: list[str] = field(default_factory=lambda: list(DEFAULT_STDIO_COMMAND))
    ws_url: str = DEFAULT_WS_URL
    token: str | None = None
    connect_timeout: float = 30.0
    request_timeout: float = 30.0
    preview_length: int = 80

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ClientSettings:
        """Resolve settings from `CODEX_APP_SERVER_*` / `CODEX_CHAT_SYNC_*` variables."""
        env = environ if environ is not None else dict(os.environ)
        settings = cls()

        transport = env.get("CODEX_CHAT_SYNC_TRANSPORT")
        if transport:
            if transport not in ("stdio", "websocket"):
                raise ValueError(f"unsupported CODEX_CHAT_SYNC_TRANSPORT: {transport!r}")
            settings.transport = transport  # type: ignore[assignment]

        command = env.get("CODEX_APP_SERVER_CMD")
        if command:
            settings.command = shlex.split(command)

        settings.ws_url = env.get("CODEX_APP_SERVER_WS_URL") or settings.ws_url
        settings.token = env.get("CODEX_APP_SERVER_TOKEN") or None

        timeout = env.get("CODEX_CHAT_SYNC_REQUEST_TIMEOUT")
        if timeout:
            settings.request_timeout = float(timeout)

        preview_length = env.get("CODEX_CHAT_SYNC_PREVIEW_LENGTH")
        if preview_length:
            settings.preview_length = int(preview_length)

        return settings


def merge_conversation_config(
    base: ConversationConfig | None,
    override: ConversationConfig | None,
) -> ConversationConfig:
    """Merge two configs where non-UNSET override values replace base values."""
    merged = ConversationConfig()
    for config in (base, override):
        if config is None:
            continue
        for field_def in fields(ConversationConfig):
            value = getattr(config, field_def.name)
            if isinstance(value, UnsetType):
                continue
            setattr(merged, field_def.name, value)
    return merged


def conversation_config_to_params(config: ConversationConfig | None) -> dict[str, Any]:
    """Encode `ConversationConfig` into `newConversation` params, omitting UNSET."""
    if config is None:
        return {}

    mapping: tuple[tuple[str, str], ...] = (
        ("profile", "profile"),
        ("model", "model"),
        ("model_provider", "modelProvider"),
        ("cwd", "cwd"),
        ("approval_policy", "approvalPolicy"),
        ("sandbox", "sandbox"),
        ("config", "config"),
        ("base_instructions", "baseInstructions"),
        ("include_plan_tool", "includePlanTool"),
        ("include_apply_patch_tool", "includeApplyPatchTool"),
    )
    params: dict[str, Any] = {}
    for attr_name, key_name in mapping:
        value = getattr(config, attr_name)
        if isinstance(value, UnsetType):
            continue
        params[key_name] = value
    return params
