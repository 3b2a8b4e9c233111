"""Chat client configuration loaded from the environment.

Required env vars:
- CHAT_WS_URL: socket endpoint (e.g., wss://chat.example.com/ws)
- CHAT_API_URL: REST base URL of the chat backend
- CHAT_UPLOAD_URL: media ingest endpoint (multipart POST)

Optional (defaults in parentheses):
- CHAT_CONNECT_TIMEOUT (15): socket handshake timeout, seconds
- CHAT_HTTP_TIMEOUT (30): REST request timeout, seconds
- CHAT_UPLOAD_TIMEOUT (30): per-file upload timeout, seconds
- CHAT_RECONNECT_MAX_ATTEMPTS (5)
- CHAT_RECONNECT_BASE_DELAY (1.0): seconds
- CHAT_RECONNECT_MAX_DELAY (30.0): seconds
- CHAT_CORRELATION_WINDOW_SECONDS (10): provisional/confirmed match tolerance
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping


@dataclass(frozen=True)
class ChatConfig:
    """Resolved chat client settings."""

    ws_url: str
    api_url: str
    upload_url: str
    connect_timeout: float = 15.0
    http_timeout: float = 30.0
    upload_timeout: float = 30.0
    reconnect_max_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    correlation_window_seconds: float = 10.0

    @property
    def correlation_window(self) -> timedelta:
        return timedelta(seconds=self.correlation_window_seconds)


def _number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must not be negative")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ChatConfig:
    """Load ChatConfig from environment variables.

    Args:
        env: Mapping to read from. Defaults to os.environ.

    Raises:
        RuntimeError: If a required URL is missing.
        ValueError: If a numeric setting cannot be parsed.
    """
    env = os.environ if env is None else env

    ws_url = env.get("CHAT_WS_URL", "")
    api_url = env.get("CHAT_API_URL", "")
    upload_url = env.get("CHAT_UPLOAD_URL", "")

    if not ws_url or not api_url or not upload_url:
        raise RuntimeError(
            "Missing chat config: CHAT_WS_URL, CHAT_API_URL, CHAT_UPLOAD_URL"
        )

    return ChatConfig(
        ws_url=ws_url,
        api_url=api_url.rstrip("/"),
        upload_url=upload_url,
        connect_timeout=_number(env, "CHAT_CONNECT_TIMEOUT", 15.0),
        http_timeout=_number(env, "CHAT_HTTP_TIMEOUT", 30.0),
        upload_timeout=_number(env, "CHAT_UPLOAD_TIMEOUT", 30.0),
        reconnect_max_attempts=_number(env, "CHAT_RECONNECT_MAX_ATTEMPTS", 5, int),
        reconnect_base_delay=_number(env, "CHAT_RECONNECT_BASE_DELAY", 1.0),
        reconnect_max_delay=_number(env, "CHAT_RECONNECT_MAX_DELAY", 30.0),
        correlation_window_seconds=_number(
            env, "CHAT_CORRELATION_WINDOW_SECONDS", 10.0
        ),
    )
