"""Shared pytest fixtures for storechat tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import FakeSleep, FakeTransportFactory  # noqa: E402


@pytest.fixture
def factory():
    """Transport factory that always succeeds."""
    return FakeTransportFactory()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture(autouse=True)
def _clear_chat_env(monkeypatch):
    """Keep the host environment out of config tests."""
    for name in (
        "CHAT_WS_URL",
        "CHAT_API_URL",
        "CHAT_UPLOAD_URL",
        "CHAT_CONNECT_TIMEOUT",
        "CHAT_HTTP_TIMEOUT",
        "CHAT_UPLOAD_TIMEOUT",
        "CHAT_RECONNECT_MAX_ATTEMPTS",
        "CHAT_RECONNECT_BASE_DELAY",
        "CHAT_RECONNECT_MAX_DELAY",
        "CHAT_CORRELATION_WINDOW_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
