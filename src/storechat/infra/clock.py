"""Clock and provisional id helpers."""

import time
import uuid
from datetime import datetime, timezone

# Prefix that marks a client-only message id
TEMP_ID_PREFIX = "temp_"


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_temp_id() -> str:
    """Generate a provisional message id: temp_<epoch ms>_<random suffix>."""
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)
