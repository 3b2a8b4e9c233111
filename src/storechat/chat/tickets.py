"""Ticket mirror and conversation list merge.

Ticket state is owned by the server. The mirror only applies what the server
announces (ticket_created / ticket_resolved) and can never resolve a ticket
on its own. Applying the same announcement twice leaves the same state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from storechat.infra.clock import utc_now
from storechat.observability.logging import get_logger

from .models import Conversation, ConversationKey, Ticket, TicketState

logger = get_logger(__name__)


class TicketMirror:
    """Client-side copy of the tickets this session has seen."""

    def __init__(self) -> None:
        self._tickets: dict[str, Ticket] = {}

    def get(self, ticket_id: str) -> Ticket | None:
        return self._tickets.get(ticket_id)

    def all(self) -> list[Ticket]:
        return list(self._tickets.values())

    def load(self, tickets: Iterable[Ticket]) -> None:
        """Seed from a REST lookup. Same rules as apply_created."""
        for ticket in tickets:
            self.apply_created(ticket)

    def apply_created(self, ticket: Ticket) -> Ticket:
        """Record a ticket announced by the server.

        A ticket already known as resolved stays resolved: resolved tickets
        are immutable.
        """
        known = self._tickets.get(ticket.id)
        if known is not None and known.state == TicketState.RESOLVED:
            return known
        self._tickets[ticket.id] = ticket
        return ticket

    def apply_resolved(
        self,
        ticket_id: str,
        *,
        ticket: Ticket | None = None,
        resolved_at: datetime | None = None,
    ) -> Ticket | None:
        """Record that the server resolved a ticket.

        Returns:
            The resolved ticket, or None when the ticket was never seen and
            the event carried no snapshot of it.
        """
        known = self._tickets.get(ticket_id)
        if known is not None and known.state == TicketState.RESOLVED:
            return known

        if ticket is not None and ticket.state == TicketState.RESOLVED:
            resolved = ticket
        else:
            base = ticket or known
            if base is None:
                logger.info(
                    "resolution for unknown ticket ignored",
                    extra={"extra_fields": {"ticket_id": ticket_id}},
                )
                return None
            resolved = base.model_copy(
                update={
                    "state": TicketState.RESOLVED,
                    "resolved_at": resolved_at or base.resolved_at or utc_now(),
                }
            )

        self._tickets[ticket_id] = resolved
        return resolved

    def open_ticket_for(self, participant_id: str) -> Ticket | None:
        """Return the participant's open ticket, if the mirror knows one."""
        for ticket in self._tickets.values():
            if ticket.participant_id == participant_id and ticket.is_open:
                return ticket
        return None


def merge_conversations(
    previous: Iterable[Conversation],
    incoming: Iterable[Conversation],
) -> list[Conversation]:
    """Merge two conversation lists, last write wins per conversation key.

    Used when "all categories" is emulated with one request per category.
    Order is first-seen order of each key.
    """
    merged: dict[ConversationKey, Conversation] = {}
    for conversation in previous:
        merged[conversation.key] = conversation
    for conversation in incoming:
        merged[conversation.key] = conversation
    return list(merged.values())
