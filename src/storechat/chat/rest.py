"""REST client for the chat backend: history, tickets, conversation lists.

Every endpoint answers with a JSON envelope ``{"success": bool, ...}``.
Calls go through requests in a worker thread so the event loop stays free.

Security: participant ids are logged as hashes only.
"""

from __future__ import annotations

import asyncio
from typing import Any

import requests
from pydantic import TypeAdapter, ValidationError

from storechat.observability.correlation import CORRELATION_ID_HEADER, get_chat_session_id
from storechat.observability.logging import get_logger
from storechat.observability.redaction import hash_identifier

from .models import ChatCategory, Conversation, Message, Ticket, TicketState
from .tickets import merge_conversations

logger = get_logger(__name__)

# Timeout for HTTP requests (seconds)
HTTP_TIMEOUT = 30

_messages_adapter = TypeAdapter(list[Message])
_tickets_adapter = TypeAdapter(list[Ticket])
_conversations_adapter = TypeAdapter(list[Conversation])


class ChatApiError(Exception):
    """Raised when a chat backend call fails or returns an unusable body."""

    pass


class ChatApiClient:
    """Thin client over the chat backend REST endpoints.

    Args:
        base_url: Backend base URL (no trailing slash needed).
        timeout: Per-request timeout in seconds.
        http: requests.Session to reuse (a new one is created if omitted).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = HTTP_TIMEOUT,
        http: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http = http or requests.Session()

    def _do_get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        """Execute HTTP GET. Raises on transport or HTTP error."""
        headers = {"Accept": "application/json"}
        session_id = get_chat_session_id()
        if session_id:
            headers[CORRELATION_ID_HEADER] = session_id

        response = self._http.get(
            f"{self._base_url}{path}",
            params=params,
            headers=headers,
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    async def _get(self, path: str, field: str, params: dict[str, str] | None = None, **log: str) -> Any:
        try:
            body = await asyncio.to_thread(self._do_get, path, params or {})
        except (requests.RequestException, ValueError) as e:
            logger.error(
                "chat api request failed",
                extra={"extra_fields": {**log, "field": field, "error": type(e).__name__}},
            )
            raise ChatApiError(f"request for {field} failed: {type(e).__name__}") from e

        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            logger.warning(
                "chat api returned unsuccessful envelope",
                extra={"extra_fields": {**log, "field": field}},
            )
            raise ChatApiError(message or f"backend refused request for {field}")

        return body.get(field)

    async def get_history(
        self,
        participant_id: str,
        chat_category: ChatCategory,
        ticket_id: str | None = None,
    ) -> list[Message]:
        """Fetch the stored messages of one conversation.

        Raises:
            ChatApiError: On network error or malformed response.
        """
        params = {"chatCategory": ChatCategory(chat_category).value}
        if ticket_id:
            params["ticketId"] = ticket_id
        raw = await self._get(
            f"/history/{participant_id}",
            "messages",
            params,
            participant_hash=hash_identifier(participant_id),
        )
        return self._parse(_messages_adapter, raw or [], "messages")

    async def list_tickets(
        self,
        participant_id: str,
        state: TicketState | None = None,
    ) -> list[Ticket]:
        """Fetch a customer's tickets, optionally filtered by state."""
        params = {"state": TicketState(state).value} if state else {}
        raw = await self._get(
            f"/tickets/{participant_id}",
            "tickets",
            params,
            participant_hash=hash_identifier(participant_id),
        )
        return self._parse(_tickets_adapter, raw or [], "tickets")

    async def get_active_ticket(self, participant_id: str) -> Ticket | None:
        """Return the customer's open ticket, or None if there is none."""
        raw = await self._get(
            f"/active-ticket/{participant_id}",
            "ticket",
            participant_hash=hash_identifier(participant_id),
        )
        if not raw:
            return None
        try:
            return Ticket.model_validate(raw)
        except ValidationError as e:
            raise ChatApiError("malformed ticket in response") from e

    async def list_active_conversations(
        self,
        chat_category: ChatCategory | None = None,
    ) -> list[Conversation]:
        """List conversations waiting for agents.

        With no category, both categories are fetched concurrently and
        merged by conversation key.
        """
        if chat_category is None:
            sales, support = await asyncio.gather(
                self.list_active_conversations(ChatCategory.SALES),
                self.list_active_conversations(ChatCategory.SUPPORT),
            )
            return merge_conversations(sales, support)

        raw = await self._get(
            "/admin/active-conversations",
            "conversations",
            {"chatCategory": ChatCategory(chat_category).value},
        )
        return self._parse(_conversations_adapter, raw or [], "conversations")

    async def get_statistics(self, participant_id: str) -> dict[str, Any]:
        """Per-customer chat counters as reported by the backend."""
        raw = await self._get(
            f"/statistics/{participant_id}",
            "statistics",
            participant_hash=hash_identifier(participant_id),
        )
        return dict(raw or {})

    @staticmethod
    def _parse(adapter: TypeAdapter, raw: Any, field: str) -> Any:
        try:
            return adapter.validate_python(raw)
        except ValidationError as e:
            logger.error(
                "chat api response failed validation",
                extra={"extra_fields": {"field": field, "errors": e.error_count()}},
            )
            raise ChatApiError(f"malformed {field} in response") from e
