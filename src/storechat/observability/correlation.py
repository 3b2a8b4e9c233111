"""Chat session id propagation for log correlation.

Each mounted chat screen gets its own id. Tasks spawned while the id is set
(reader loop, reconnection timers) inherit it through the copied context.
"""

import uuid
from contextvars import ContextVar, Token

chat_session_id_var: ContextVar[str] = ContextVar("chat_session_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def new_chat_session_id() -> str:
    """Generate a new chat session id."""
    return f"chat-{uuid.uuid4().hex[:12]}"


def get_chat_session_id() -> str:
    return chat_session_id_var.get()


def bind_chat_session_id(session_id: str) -> Token[str]:
    """Bind the session id to the current context."""
    return chat_session_id_var.set(session_id)


def unbind_chat_session_id(token: Token[str]) -> None:
    chat_session_id_var.reset(token)
