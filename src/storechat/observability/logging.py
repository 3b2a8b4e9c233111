"""Structured JSON logging tagged with the active chat session."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_chat_session_id

LOG_LEVEL = os.environ.get("CHAT_LOG_LEVEL", "INFO").upper()


class JsonFormatter(logging.Formatter):
    """JSON formatter that stamps each record with the chat session id."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        chat_session_id = get_chat_session_id()
        if chat_session_id:
            log_obj["chatSessionId"] = chat_session_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_obj.update(record.extra_fields)

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger that writes JSON lines to stdout.

    The level comes from CHAT_LOG_LEVEL (default INFO). Handlers are attached
    once per logger name.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        logger.propagate = False

    return logger
