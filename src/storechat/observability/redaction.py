"""Redaction helpers for chat logs.

Message bodies, participant ids and file names never reach the logs. Log a
hash or a length instead. safe_log_context() is meant for metadata (enum
values, temp ids, counters); anything that does not look like a short token
is logged as its length only.
"""

import hashlib
import re
from typing import Any

# enum values, hashes, temp ids, MIME types
_TOKEN_PATTERN = re.compile(r"[A-Za-z0-9_.:/-]{1,64}")


def hash_identifier(value: str) -> str:
    """Non-reversible short hash of an identifier (first 12 hex chars of sha256)."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def redact_value(value: Any) -> str:
    """Render any value for logging without leaking content."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        if _TOKEN_PATTERN.fullmatch(value):
            return value
        return f"str(len={len(value)})"
    if isinstance(value, dict):
        return f"dict(keys={len(value)})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build an extra_fields dict where every value went through redact_value."""
    return {k: redact_value(v) for k, v in kwargs.items()}
