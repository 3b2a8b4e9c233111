"""Chat data model: messages, attachments, tickets and conversations.

All models serialize with camelCase aliases (participantId, chatCategory,
ticketId, ...) which is what the chat backend speaks on the socket and over
REST. Python code uses the snake_case names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, NamedTuple

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storechat.infra.clock import is_temp_id, new_temp_id, utc_now

MAX_BODY_LENGTH = 500

# storage_id of an attachment that has not finished uploading
LOCAL_PREVIEW_STORAGE_ID = "local-preview"


def _assume_utc(value: datetime) -> datetime:
    """Timestamps sent without an offset are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Always timezone-aware, so server and local timestamps can be compared
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


class InvalidMessageError(Exception):
    """Raised when an outgoing message breaks the content rules."""

    pass


class ChatCategory(str, Enum):
    SALES = "sales"
    SUPPORT = "support"


class Role(str, Enum):
    """Who is on a connection, and who sent a message."""

    CUSTOMER = "customer"
    AGENT = "agent"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class TicketState(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WireModel(BaseModel):
    """Base for everything that crosses the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Attachment(WireModel):
    kind: AttachmentKind
    source_url: str
    original_name: str
    size_bytes: int = Field(default=0, ge=0)
    storage_id: str = LOCAL_PREVIEW_STORAGE_ID
    dimensions: str | None = None
    duration: float | None = None
    uploaded_at: UtcDatetime | None = None

    @property
    def is_uploaded(self) -> bool:
        return bool(self.storage_id) and self.storage_id != LOCAL_PREVIEW_STORAGE_ID


class ConversationKey(NamedTuple):
    """Uniqueness key of a conversation. A missing ticket is always None."""

    participant_id: str
    chat_category: ChatCategory
    ticket_id: str | None

    @classmethod
    def of(
        cls,
        participant_id: str,
        chat_category: ChatCategory | str,
        ticket_id: str | None = None,
    ) -> "ConversationKey":
        return cls(participant_id, ChatCategory(chat_category), ticket_id or None)


class Message(WireModel):
    id: str
    participant_id: str
    chat_category: ChatCategory
    ticket_id: str | None = None
    body: str = Field(default="", max_length=MAX_BODY_LENGTH)
    sender: Role
    is_read: bool = False
    attachments: list[Attachment] = Field(default_factory=list)
    sent_at: UtcDatetime

    @property
    def is_provisional(self) -> bool:
        return is_temp_id(self.id)

    @property
    def conversation_key(self) -> ConversationKey:
        return ConversationKey.of(self.participant_id, self.chat_category, self.ticket_id)

    @property
    def ready_for_wire(self) -> bool:
        """True once every attachment has finished uploading."""
        return all(a.is_uploaded for a in self.attachments)


def check_outgoing_content(body: str, attachments: list[Attachment] | tuple = ()) -> str:
    """Validate outgoing content and return the trimmed body.

    Raises:
        InvalidMessageError: If body and attachments are both empty, or the
            body is longer than MAX_BODY_LENGTH.
    """
    text = (body or "").strip()
    if not text and not attachments:
        raise InvalidMessageError("message must have a body or attachments")
    if len(text) > MAX_BODY_LENGTH:
        raise InvalidMessageError(
            f"message body cannot exceed {MAX_BODY_LENGTH} characters"
        )
    return text


def new_provisional_message(
    *,
    key: ConversationKey,
    body: str,
    sender: Role,
    attachments: list[Attachment] | None = None,
) -> Message:
    """Build a client-only message stamped with a temp id and the current time.

    Raises:
        InvalidMessageError: If the content is not sendable.
    """
    attachments = list(attachments or [])
    text = check_outgoing_content(body, attachments)
    return Message(
        id=new_temp_id(),
        participant_id=key.participant_id,
        chat_category=key.chat_category,
        ticket_id=key.ticket_id,
        body=text,
        sender=sender,
        attachments=attachments,
        sent_at=utc_now(),
    )


class Ticket(WireModel):
    id: str
    participant_id: str
    title: str
    description: str = ""
    priority: TicketPriority = TicketPriority.MEDIUM
    state: TicketState = TicketState.OPEN
    opened_at: UtcDatetime
    resolved_at: UtcDatetime | None = None

    @property
    def is_open(self) -> bool:
        return self.state == TicketState.OPEN


class ParticipantInfo(WireModel):
    name: str = ""
    email: str = ""
    phone: str | None = None


class MessagePreview(WireModel):
    body: str = ""
    sender: Role
    sent_at: UtcDatetime


class Conversation(WireModel):
    """Summary row an agent picks from the conversation list."""

    participant_id: str
    chat_category: ChatCategory
    ticket_id: str | None = None
    participant: ParticipantInfo = Field(default_factory=ParticipantInfo)
    ticket: Ticket | None = None
    last_message: MessagePreview | None = None
    unread_count: int = 0
    total_messages: int = 0
    active: bool = True

    @property
    def key(self) -> ConversationKey:
        return ConversationKey.of(self.participant_id, self.chat_category, self.ticket_id)
