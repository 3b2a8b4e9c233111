"""Optimistic message timeline for the conversation on screen.

Sent messages show up at once with a temp id. When the server echoes them
back (message_confirmed / new_message) we cannot match by id, since the
server assigns its own, so the provisional copy is matched by sender and
by how close the two timestamps are, then replaced in place.

The correlation window is a heuristic: two distinct messages from the same
sender inside the window can be paired with each other. Keep it short.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any, Iterable

from storechat.observability.logging import get_logger

from .models import ConversationKey, Message

logger = get_logger(__name__)

DEFAULT_CORRELATION_WINDOW = timedelta(seconds=10)


class ReceiveOutcome(str, Enum):
    REPLACED = "replaced"
    APPENDED = "appended"
    DUPLICATE = "duplicate"
    OTHER_CONVERSATION = "other_conversation"


class MessageTimeline:
    """Visible message list plus the provisional bookkeeping around it.

    Args:
        conversation: Conversation currently on screen, or None.
        correlation_window: Max distance between a provisional message's
            sent_at and its confirmed copy's sent_at.
    """

    def __init__(
        self,
        conversation: ConversationKey | None = None,
        *,
        correlation_window: timedelta = DEFAULT_CORRELATION_WINDOW,
    ) -> None:
        self._conversation = conversation
        self._window = correlation_window
        self._messages: list[Message] = []
        self._failed: dict[str, str] = {}
        # what a failed message still needs for a retry (files not uploaded)
        self._retry_payload: dict[str, list[Any]] = {}

    @property
    def conversation(self) -> ConversationKey | None:
        return self._conversation

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def correlation_window(self) -> timedelta:
        return self._window

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    # -- conversation selection -------------------------------------------

    def show(self, conversation: ConversationKey | None) -> None:
        """Switch to another conversation. The list starts empty."""
        self._conversation = conversation
        self.clear()

    def clear(self) -> None:
        self._messages.clear()
        self._failed.clear()
        self._retry_payload.clear()

    def belongs_here(self, message: Message) -> bool:
        return self._conversation is not None and message.conversation_key == self._conversation

    def load_history(self, messages: Iterable[Message]) -> int:
        """Replace the list with server history for this conversation.

        Messages of other conversations are skipped; duplicate ids keep the
        first copy. A pending provisional message whose confirmed copy is
        already in the history is dropped; the others are kept at the end
        so a history reply racing a send does not hide the send.

        Returns:
            Number of history messages loaded.
        """
        history: list[Message] = []
        seen: set[str] = set()
        for message in messages:
            if not self.belongs_here(message) or message.id in seen:
                continue
            seen.add(message.id)
            history.append(message)

        # messages already on screen confirm nothing new
        shown = {m.id for m in self._messages if not m.is_provisional}
        matched = {i for i, m in enumerate(history) if m.id in shown}
        pending: list[Message] = []
        for message in self._messages:
            if not message.is_provisional:
                continue
            if message.id not in self._failed:
                index = self._match_in(history, message, matched)
                if index is not None:
                    matched.add(index)
                    continue
            pending.append(message)

        self._messages = history + pending
        return len(history)

    def _match_in(self, history: list[Message], provisional: Message, taken: set[int]) -> int | None:
        for i, candidate in enumerate(history):
            if i in taken or candidate.sender != provisional.sender:
                continue
            if abs(candidate.sent_at - provisional.sent_at) <= self._window:
                return i
        return None

    # -- send path ----------------------------------------------------------

    def add_provisional(self, message: Message) -> None:
        """Append a locally created message.

        Raises:
            ValueError: If the message has a permanent id.
        """
        if not message.is_provisional:
            raise ValueError("only provisional messages can be added locally")
        if self.get(message.id) is None:
            self._messages.append(message)

    def update_provisional(self, message: Message) -> bool:
        """Swap in a newer version of a provisional message (same temp id)."""
        for i, existing in enumerate(self._messages):
            if existing.id == message.id:
                self._messages[i] = message
                return True
        return False

    def mark_failed(self, temp_id: str, reason: str, retry_payload: Iterable[Any] = ()) -> None:
        """Flag a provisional message that could not be sent.

        It stays visible but is no longer a candidate for reconciliation.
        ``retry_payload`` is kept until the message is retried or dropped.
        """
        if self.get(temp_id) is None:
            return
        self._failed[temp_id] = reason
        payload = list(retry_payload)
        if payload:
            self._retry_payload[temp_id] = payload
        else:
            self._retry_payload.pop(temp_id, None)

    def clear_failed(self, temp_id: str) -> list[Any]:
        """Unflag a failed message and hand back its retry payload."""
        self._failed.pop(temp_id, None)
        return self._retry_payload.pop(temp_id, [])

    def retry_payload(self, temp_id: str) -> list[Any]:
        return list(self._retry_payload.get(temp_id, ()))

    def failure_reason(self, temp_id: str) -> str | None:
        return self._failed.get(temp_id)

    @property
    def failed_ids(self) -> list[str]:
        return list(self._failed)

    def remove(self, message_id: str) -> bool:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                del self._messages[i]
                self._failed.pop(message_id, None)
                self._retry_payload.pop(message_id, None)
                return True
        return False

    # -- receive path -------------------------------------------------------

    def find_provisional_match(self, incoming: Message) -> int | None:
        """Index of the earliest pending message that incoming confirms."""
        for i, candidate in enumerate(self._messages):
            if not candidate.is_provisional or candidate.id in self._failed:
                continue
            if candidate.sender != incoming.sender:
                continue
            if abs(incoming.sent_at - candidate.sent_at) <= self._window:
                return i
        return None

    def apply_incoming(self, incoming: Message) -> ReceiveOutcome:
        """Merge a server-confirmed message into the list.

        Returns:
            What happened: replaced a provisional message, appended, dropped
            as a duplicate, or ignored because it is for another conversation.
        """
        if not self.belongs_here(incoming):
            return ReceiveOutcome.OTHER_CONVERSATION

        if self.get(incoming.id) is not None:
            return ReceiveOutcome.DUPLICATE

        index = self.find_provisional_match(incoming)
        if index is not None:
            replaced = self._messages[index]
            self._messages[index] = incoming
            logger.debug(
                "provisional message confirmed",
                extra={"extra_fields": {"temp_id": replaced.id, "message_id": incoming.id}},
            )
            return ReceiveOutcome.REPLACED

        self._messages.append(incoming)
        return ReceiveOutcome.APPENDED
