"""Shared test helpers for storechat tests.

This module contains fakes and builders that can be imported by both
conftest.py and individual test files. These are NOT fixtures - they are
regular functions and classes.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

from storechat.chat.models import (
    Attachment,
    AttachmentKind,
    ChatCategory,
    Conversation,
    Message,
    Role,
    Ticket,
    TicketState,
)
from storechat.chat.transport import TransportClosed, TransportError

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeTransport:
    """In-memory socket. Frames pushed by the test come out of recv()."""

    def __init__(self):
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, frame: str) -> None:
        if self.closed:
            raise TransportClosed("closed")
        self.sent.append(frame)

    async def recv(self) -> str:
        frame = await self._inbox.get()
        if frame is None:
            raise TransportClosed("closed")
        return frame

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def push(self, payload) -> None:
        """Queue an inbound frame (dict payloads are JSON-encoded)."""
        self._inbox.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self) -> None:
        """Simulate the remote side closing the socket."""
        self.closed = True
        self._inbox.put_nowait(None)

    def sent_events(self) -> list[dict]:
        return [json.loads(frame) for frame in self.sent]

    def sent_types(self) -> list[str]:
        return [event["type"] for event in self.sent_events()]


class FakeTransportFactory:
    """Transport factory that fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.transports: list[FakeTransport] = []

    async def __call__(self, url: str) -> FakeTransport:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransportError("connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class FakeSleep:
    """Records requested delays and returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def settle(predicate=None, rounds: int = 200) -> None:
    """Yield to the event loop until predicate() is true (or rounds run out)."""
    for _ in range(rounds):
        if predicate is not None and predicate():
            return
        await asyncio.sleep(0)


def make_message(
    message_id: str = "srv-1",
    *,
    participant_id: str = "user-1",
    chat_category: ChatCategory = ChatCategory.SALES,
    ticket_id: str | None = None,
    body: str = "hello",
    sender: Role = Role.CUSTOMER,
    sent_at: datetime = BASE_TIME,
    attachments: list[Attachment] | None = None,
) -> Message:
    return Message(
        id=message_id,
        participant_id=participant_id,
        chat_category=chat_category,
        ticket_id=ticket_id,
        body=body,
        sender=sender,
        sent_at=sent_at,
        attachments=attachments or [],
    )


def message_payload(message: Message) -> dict:
    """Wire (camelCase) form of a message."""
    return message.model_dump(mode="json", by_alias=True)


def make_ticket(
    ticket_id: str = "t-1",
    *,
    participant_id: str = "user-1",
    state: TicketState = TicketState.OPEN,
) -> Ticket:
    return Ticket(
        id=ticket_id,
        participant_id=participant_id,
        title="Broken screen",
        state=state,
        opened_at=BASE_TIME - timedelta(hours=1),
    )


def make_conversation(
    participant_id: str = "user-1",
    chat_category: ChatCategory = ChatCategory.SALES,
    ticket_id: str | None = None,
    unread_count: int = 0,
) -> Conversation:
    return Conversation(
        participant_id=participant_id,
        chat_category=chat_category,
        ticket_id=ticket_id,
        unread_count=unread_count,
    )


def uploaded_attachment(name: str = "photo.jpg", storage_id: str = "media/abc") -> Attachment:
    return Attachment(
        kind=AttachmentKind.IMAGE,
        source_url=f"https://cdn.example.com/{storage_id}",
        original_name=name,
        size_bytes=1024,
        storage_id=storage_id,
    )
