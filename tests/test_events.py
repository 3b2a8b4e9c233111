"""Tests for the socket wire protocol models."""

import json

import pytest

from storechat.chat.events import (
    INBOUND_EVENT_TYPES,
    ActiveConversationsEvent,
    HistoryEvent,
    IdentifyEvent,
    InvalidEventError,
    NewMessageEvent,
    SendMessageWithAttachmentsEvent,
    TicketResolvedEvent,
    parse_event,
)
from storechat.chat.models import ChatCategory, Role

from helpers import make_conversation, make_message, message_payload, uploaded_attachment


class TestOutbound:
    """Outbound events serialize to camelCase frames."""

    def test_identify_frame(self):
        frame = json.loads(IdentifyEvent(participant_id="user-1", role=Role.AGENT).to_wire())

        assert frame == {"type": "identify", "participantId": "user-1", "role": "agent"}

    def test_send_with_attachments_frame(self):
        event = SendMessageWithAttachmentsEvent(
            participant_id="user-1",
            chat_category=ChatCategory.SUPPORT,
            body="see photo",
            attachments=[uploaded_attachment()],
            ticket_id="t-1",
        )

        frame = json.loads(event.to_wire())

        assert frame["type"] == "send_message_with_attachments"
        assert frame["chatCategory"] == "support"
        assert frame["ticketId"] == "t-1"
        assert frame["attachments"][0]["storageId"] == "media/abc"
        assert frame["attachments"][0]["originalName"] == "photo.jpg"


class TestParseEvent:
    """parse_event() turns frames into typed events or InvalidEventError."""

    def test_new_message(self):
        message = make_message("srv-7", body="hi there")
        event = parse_event(json.dumps({"type": "new_message", "message": message_payload(message)}))

        assert isinstance(event, NewMessageEvent)
        assert event.message.id == "srv-7"
        assert event.message.body == "hi there"
        assert event.message.sender == Role.CUSTOMER

    def test_history_defaults_to_empty(self):
        event = parse_event('{"type": "history"}')

        assert isinstance(event, HistoryEvent)
        assert event.messages == []

    def test_active_conversations_with_category(self):
        conversation = make_conversation("user-2", ChatCategory.SUPPORT, "t-3")
        event = parse_event(
            json.dumps(
                {
                    "type": "active_conversations",
                    "chatCategory": "support",
                    "conversations": [conversation.model_dump(mode="json", by_alias=True)],
                }
            )
        )

        assert isinstance(event, ActiveConversationsEvent)
        assert event.chat_category == ChatCategory.SUPPORT
        assert event.conversations[0].key == conversation.key

    def test_ticket_resolved_minimal(self):
        event = parse_event('{"type": "ticket_resolved", "ticketId": "t-1"}')

        assert isinstance(event, TicketResolvedEvent)
        assert event.ticket_id == "t-1"
        assert event.ticket is None

    def test_bytes_frame(self):
        event = parse_event(b'{"type": "error", "message": "nope"}')
        assert event.message == "nope"

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            '{"type": "unknown_event"}',
            '{"message": "no type"}',
            '{"type": "new_message"}',
            '{"type": "ticket_created", "ticket": {"id": "t-1"}}',
        ],
    )
    def test_invalid_frames_raise(self, frame):
        with pytest.raises(InvalidEventError):
            parse_event(frame)

    def test_inbound_types_match_union(self):
        assert "new_ticket" in INBOUND_EVENT_TYPES
        assert "identify" not in INBOUND_EVENT_TYPES
