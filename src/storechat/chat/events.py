"""Socket wire protocol: one pydantic model per event type.

Every frame is a JSON object discriminated by its ``type`` field. Outbound
events are built by the connection manager and the chat session; inbound
frames go through parse_event() before reaching the dispatch registry.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError

from .models import (
    Attachment,
    ChatCategory,
    Conversation,
    Message,
    Role,
    Ticket,
    WireModel,
)


class InvalidEventError(Exception):
    """Raised when an inbound frame is not valid JSON or not a known event."""

    pass


class WireEvent(WireModel):
    type: str

    def to_wire(self) -> str:
        """Serialize to the JSON frame written on the socket."""
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# client -> server
# ---------------------------------------------------------------------------


class IdentifyEvent(WireEvent):
    type: Literal["identify"] = "identify"
    participant_id: str
    role: Role


class SendMessageEvent(WireEvent):
    type: Literal["send_message"] = "send_message"
    participant_id: str
    chat_category: ChatCategory
    body: str
    ticket_id: str | None = None


class SendMessageWithAttachmentsEvent(WireEvent):
    type: Literal["send_message_with_attachments"] = "send_message_with_attachments"
    participant_id: str
    chat_category: ChatCategory
    body: str
    attachments: list[Attachment]
    ticket_id: str | None = None


class RequestHistoryEvent(WireEvent):
    type: Literal["request_history"] = "request_history"
    participant_id: str
    chat_category: ChatCategory
    ticket_id: str | None = None


class CreateTicketEvent(WireEvent):
    type: Literal["create_ticket"] = "create_ticket"
    participant_id: str
    title: str
    description: str


class ResolveTicketEvent(WireEvent):
    type: Literal["resolve_ticket"] = "resolve_ticket"
    participant_id: str
    ticket_id: str


class RequestActiveConversationsEvent(WireEvent):
    type: Literal["request_active_conversations"] = "request_active_conversations"
    chat_category: ChatCategory


class MarkReadEvent(WireEvent):
    type: Literal["mark_read"] = "mark_read"
    participant_id: str
    chat_category: ChatCategory
    ticket_id: str | None = None


OutboundEvent = Union[
    IdentifyEvent,
    SendMessageEvent,
    SendMessageWithAttachmentsEvent,
    RequestHistoryEvent,
    CreateTicketEvent,
    ResolveTicketEvent,
    RequestActiveConversationsEvent,
    MarkReadEvent,
]


# ---------------------------------------------------------------------------
# server -> client
# ---------------------------------------------------------------------------


class HistoryEvent(WireEvent):
    type: Literal["history"] = "history"
    messages: list[Message] = Field(default_factory=list)


class NewMessageEvent(WireEvent):
    type: Literal["new_message"] = "new_message"
    message: Message


class MessageConfirmedEvent(WireEvent):
    type: Literal["message_confirmed"] = "message_confirmed"
    message: Message


class ActiveConversationsEvent(WireEvent):
    type: Literal["active_conversations"] = "active_conversations"
    conversations: list[Conversation] = Field(default_factory=list)
    chat_category: ChatCategory | None = None


class TicketCreatedEvent(WireEvent):
    type: Literal["ticket_created"] = "ticket_created"
    ticket: Ticket


class TicketResolvedEvent(WireEvent):
    type: Literal["ticket_resolved"] = "ticket_resolved"
    ticket_id: str
    participant_id: str | None = None
    ticket: Ticket | None = None


class NewTicketEvent(WireEvent):
    """Broadcast to agents when a customer opens a ticket."""

    type: Literal["new_ticket"] = "new_ticket"
    ticket: Ticket


class ErrorEvent(WireEvent):
    type: Literal["error"] = "error"
    message: str = ""


InboundEvent = Annotated[
    Union[
        HistoryEvent,
        NewMessageEvent,
        MessageConfirmedEvent,
        ActiveConversationsEvent,
        TicketCreatedEvent,
        TicketResolvedEvent,
        NewTicketEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)

INBOUND_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "history",
        "new_message",
        "message_confirmed",
        "active_conversations",
        "ticket_created",
        "ticket_resolved",
        "new_ticket",
        "error",
    }
)


def parse_event(raw: str | bytes) -> InboundEvent:
    """Parse one inbound socket frame.

    Args:
        raw: JSON text as received from the socket.

    Returns:
        The concrete event model selected by the ``type`` field.

    Raises:
        InvalidEventError: If the frame is not JSON, has an unknown type, or
            its payload does not match the event shape.
    """
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError as e:
        errors = e.errors()
        first = errors[0]["type"] if errors else "invalid"
        raise InvalidEventError(f"invalid inbound frame ({first})") from e
