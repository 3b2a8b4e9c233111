"""Tests for observability utilities."""

import json
import logging

from storechat.observability.correlation import (
    bind_chat_session_id,
    get_chat_session_id,
    new_chat_session_id,
    unbind_chat_session_id,
)
from storechat.observability.logging import JsonFormatter, get_logger
from storechat.observability.redaction import (
    hash_identifier,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_free_text_logged_as_length(self):
        result = redact_value("my card number is 4111 1111")
        assert "card" not in result
        assert result == "str(len=27)"

    def test_email_and_phone_never_pass(self):
        assert redact_value("user@example.com") == "str(len=16)"
        assert redact_value("+55 11 99999-8888") == "str(len=17)"

    def test_tokens_pass_through(self):
        assert redact_value("customer") == "customer"
        assert redact_value("image/jpeg") == "image/jpeg"
        assert redact_value("temp_1772366400000_a1b2c3") == "temp_1772366400000_a1b2c3"

    def test_redact_value_dict_only_size(self):
        result = redact_value({"body": "my card number", "participantId": "user-1"})
        assert "my card number" not in result
        assert "user-1" not in result
        assert result == "dict(keys=2)"

    def test_redact_value_list_only_len(self):
        result = redact_value(["a", "b", "c"])
        assert "len=3" in result

    def test_safe_log_context(self):
        ctx = safe_log_context(body="hello there", count=42, missing=None, ok=True)
        assert ctx["body"] == "str(len=11)"
        assert ctx["count"] == "42"
        assert ctx["missing"] == "null"
        assert ctx["ok"] == "true"

    def test_hash_identifier_is_stable_and_short(self):
        assert hash_identifier("user-1") == hash_identifier("user-1")
        assert hash_identifier("user-1") != hash_identifier("user-2")
        assert len(hash_identifier("user-1")) == 12
        assert "user-1" not in hash_identifier("user-1")


class TestCorrelation:
    """Chat session id context."""

    def test_new_id_format(self):
        session_id = new_chat_session_id()
        assert session_id.startswith("chat-")
        assert len(session_id) == len("chat-") + 12

    def test_bind_and_unbind(self):
        assert get_chat_session_id() == ""
        token = bind_chat_session_id("chat-123")
        assert get_chat_session_id() == "chat-123"
        unbind_chat_session_id(token)
        assert get_chat_session_id() == ""


class TestJsonFormatter:
    """Log lines are JSON with the session id and extra fields."""

    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("storechat.test", logging.INFO, __file__, 1, "hello", (), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_includes_session_id_when_bound(self):
        token = bind_chat_session_id("chat-abc")
        try:
            line = json.loads(JsonFormatter().format(self._record()))
        finally:
            unbind_chat_session_id(token)

        assert line["chatSessionId"] == "chat-abc"
        assert line["message"] == "hello"
        assert line["level"] == "INFO"

    def test_no_session_id_when_unbound(self):
        line = json.loads(JsonFormatter().format(self._record()))
        assert "chatSessionId" not in line

    def test_extra_fields_merged(self):
        line = json.loads(JsonFormatter().format(self._record(extra_fields={"attempt": 2})))
        assert line["attempt"] == 2

    def test_get_logger_attaches_one_handler(self):
        first = get_logger("storechat.test.single")
        second = get_logger("storechat.test.single")

        assert first is second
        assert len(first.handlers) == 1
        assert isinstance(first.handlers[0].formatter, JsonFormatter)
        assert first.propagate is False
