"""Tests for the chat backend REST client."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from storechat.chat.models import ChatCategory, TicketState
from storechat.chat.rest import ChatApiClient, ChatApiError
from storechat.observability.correlation import (
    CORRELATION_ID_HEADER,
    bind_chat_session_id,
    unbind_chat_session_id,
)

from helpers import make_conversation, make_message, make_ticket, message_payload

API_URL = "https://chat.test/api/"


def dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


class TestHttpLayer:
    """_do_get builds the request the backend expects."""

    def test_url_params_and_headers(self):
        http = MagicMock()
        http.get.return_value.json.return_value = {"success": True}
        client = ChatApiClient(API_URL, http=http, timeout=5)

        token = bind_chat_session_id("chat-abc")
        try:
            client._do_get("/history/user-1", {"chatCategory": "sales"})
        finally:
            unbind_chat_session_id(token)

        args, kwargs = http.get.call_args
        assert args[0] == "https://chat.test/api/history/user-1"
        assert kwargs["params"] == {"chatCategory": "sales"}
        assert kwargs["headers"][CORRELATION_ID_HEADER] == "chat-abc"
        assert kwargs["timeout"] == 5
        http.get.return_value.raise_for_status.assert_called_once()


class TestEndpoints:
    """Envelope parsing per endpoint."""

    @pytest.mark.asyncio
    async def test_get_history(self):
        client = ChatApiClient(API_URL)
        body = {"success": True, "messages": [message_payload(make_message("srv-1"))]}
        with patch.object(ChatApiClient, "_do_get", return_value=body) as get:
            messages = await client.get_history("user-1", ChatCategory.SUPPORT, "t-1")

        assert [m.id for m in messages] == ["srv-1"]
        get.assert_called_once_with("/history/user-1", {"chatCategory": "support", "ticketId": "t-1"})

    @pytest.mark.asyncio
    async def test_list_tickets_with_state(self):
        client = ChatApiClient(API_URL)
        body = {"success": True, "tickets": [dump(make_ticket("t-1"))]}
        with patch.object(ChatApiClient, "_do_get", return_value=body) as get:
            tickets = await client.list_tickets("user-1", TicketState.OPEN)

        assert tickets[0].id == "t-1"
        get.assert_called_once_with("/tickets/user-1", {"state": "open"})

    @pytest.mark.asyncio
    async def test_active_ticket_none(self):
        client = ChatApiClient(API_URL)
        with patch.object(ChatApiClient, "_do_get", return_value={"success": True, "ticket": None}):
            assert await client.get_active_ticket("user-1") is None

    @pytest.mark.asyncio
    async def test_active_ticket_found(self):
        client = ChatApiClient(API_URL)
        body = {"success": True, "ticket": dump(make_ticket("t-5"))}
        with patch.object(ChatApiClient, "_do_get", return_value=body):
            ticket = await client.get_active_ticket("user-1")

        assert ticket.id == "t-5"
        assert ticket.is_open

    @pytest.mark.asyncio
    async def test_all_categories_are_merged(self):
        client = ChatApiClient(API_URL)

        def fake_get(path, params):
            category = ChatCategory(params["chatCategory"])
            ticket = "t-1" if category == ChatCategory.SUPPORT else None
            return {"success": True, "conversations": [dump(make_conversation("user-1", category, ticket))]}

        with patch.object(ChatApiClient, "_do_get", side_effect=fake_get) as get:
            conversations = await client.list_active_conversations()

        assert get.call_count == 2
        assert {c.chat_category for c in conversations} == {ChatCategory.SALES, ChatCategory.SUPPORT}

    @pytest.mark.asyncio
    async def test_statistics(self):
        client = ChatApiClient(API_URL)
        body = {"success": True, "statistics": {"totalMessages": 12}}
        with patch.object(ChatApiClient, "_do_get", return_value=body):
            assert await client.get_statistics("user-1") == {"totalMessages": 12}


class TestErrors:
    """Failures surface as ChatApiError."""

    @pytest.mark.asyncio
    async def test_network_error(self):
        client = ChatApiClient(API_URL)
        with patch.object(ChatApiClient, "_do_get", side_effect=requests.ConnectionError("down")):
            with pytest.raises(ChatApiError):
                await client.get_history("user-1", ChatCategory.SALES)

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_uses_message(self):
        client = ChatApiClient(API_URL)
        with patch.object(ChatApiClient, "_do_get", return_value={"success": False, "message": "not allowed"}):
            with pytest.raises(ChatApiError, match="not allowed"):
                await client.list_tickets("user-1")

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        client = ChatApiClient(API_URL)
        with patch.object(ChatApiClient, "_do_get", return_value={"success": True, "messages": [{"id": 1}]}):
            with pytest.raises(ChatApiError, match="malformed messages"):
                await client.get_history("user-1", ChatCategory.SALES)
