"""Chat session: everything one mounted chat screen needs.

A ChatSession owns its ConnectionManager (no shared socket), registers the
inbound handlers, and implements the customer and agent flows:

- send path: provisional message -> uploads -> send_message[_with_attachments]
- receive path: reconcile into the timeline, or refresh the conversation list
  when the message belongs elsewhere (agents auto-select it when idle)
- ticket gate: customers cannot write in the support category without an
  open ticket

Usage:
    async with ChatSession.from_config(config, user_id, Role.CUSTOMER) as chat:
        await chat.open_conversation(ChatCategory.SALES)
        await chat.send("Hello")
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from storechat.config import ChatConfig
from storechat.infra.clock import utc_now
from storechat.observability.correlation import (
    bind_chat_session_id,
    new_chat_session_id,
    unbind_chat_session_id,
)
from storechat.observability.logging import get_logger
from storechat.observability.redaction import hash_identifier, safe_log_context

from .connection import ConnectionManager, ConnectionState, ReconnectPolicy
from .events import (
    ActiveConversationsEvent,
    CreateTicketEvent,
    ErrorEvent,
    HistoryEvent,
    MarkReadEvent,
    MessageConfirmedEvent,
    NewMessageEvent,
    NewTicketEvent,
    RequestActiveConversationsEvent,
    RequestHistoryEvent,
    ResolveTicketEvent,
    SendMessageEvent,
    SendMessageWithAttachmentsEvent,
    TicketCreatedEvent,
    TicketResolvedEvent,
)
from .models import (
    ChatCategory,
    Conversation,
    ConversationKey,
    InvalidMessageError,
    Message,
    Role,
    Ticket,
    new_provisional_message,
)
from .reconciliation import DEFAULT_CORRELATION_WINDOW, MessageTimeline, ReceiveOutcome
from .rest import ChatApiClient, ChatApiError
from .tickets import TicketMirror, merge_conversations
from .uploads import CandidateFile, UploadPipeline, partition_valid

logger = get_logger(__name__)


class TicketRequiredError(Exception):
    """Raised when a customer writes in support without an open ticket."""

    pass


class NoConversationError(Exception):
    """Raised when an operation needs a conversation and none is selected."""

    pass


class RoleError(Exception):
    """Raised when a customer-only or agent-only operation is misused."""

    pass


@dataclass
class SendResult:
    """Outcome of ChatSession.send() / retry().

    Attributes:
        message: The provisional message as it now sits in the timeline.
        sent: True once the wire event was written to the socket.
        errors: Upload or connection errors (message is marked failed).
        rejected: Files dropped by validation, "<name>: <reason>".
    """

    message: Message
    sent: bool
    errors: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


class ChatSession:
    """View-model for one customer or agent chat screen.

    Args:
        participant_id: Id of the logged-in user.
        role: customer or agent.
        connection: Connection manager owned by this session.
        api: REST collaborator (history, tickets, conversation lists).
        uploads: Attachment upload pipeline.
        correlation_window: Tolerance used to confirm provisional messages.
    """

    def __init__(
        self,
        participant_id: str,
        role: Role,
        *,
        connection: ConnectionManager,
        api: ChatApiClient,
        uploads: UploadPipeline,
        correlation_window=DEFAULT_CORRELATION_WINDOW,
    ) -> None:
        self.participant_id = participant_id
        self.role = Role(role)
        self.session_id = new_chat_session_id()
        self.connection = connection
        self.api = api
        self.uploads = uploads

        self.timeline = MessageTimeline(correlation_window=correlation_window)
        self.tickets = TicketMirror()
        self.conversations: list[Conversation] = []
        self.conversation_filter: ChatCategory | None = None
        self.ticket_required = False
        self.last_error: str | None = None

        self._started = False

    @classmethod
    def from_config(cls, config: ChatConfig, participant_id: str, role: Role) -> "ChatSession":
        """Build a session and its collaborators from ChatConfig."""
        connection = ConnectionManager(
            config.ws_url,
            policy=ReconnectPolicy(
                max_attempts=config.reconnect_max_attempts,
                base_delay=config.reconnect_base_delay,
                max_delay=config.reconnect_max_delay,
            ),
            connect_timeout=config.connect_timeout,
        )
        return cls(
            participant_id,
            role,
            connection=connection,
            api=ChatApiClient(config.api_url, timeout=config.http_timeout),
            uploads=UploadPipeline(config.upload_url, timeout=config.upload_timeout),
            correlation_window=config.correlation_window,
        )

    # -- state -------------------------------------------------------------

    @property
    def active_conversation(self) -> ConversationKey | None:
        return self.timeline.conversation

    @property
    def messages(self) -> list[Message]:
        return self.timeline.messages

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def disconnected(self) -> bool:
        """True when reconnection gave up; the screen should offer reconnect()."""
        return self.connection.reconnect_exhausted

    @property
    def active_ticket(self) -> Ticket | None:
        return self.tickets.open_ticket_for(self.participant_id)

    @contextmanager
    def _bound(self) -> Iterator[None]:
        token = bind_chat_session_id(self.session_id)
        try:
            yield
        finally:
            unbind_chat_session_id(token)

    # -- lifecycle ---------------------------------------------------------

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self) -> None:
        """Register handlers and connect.

        Raises:
            ConnectionHandshakeError: If the socket could not be opened; the
                connection manager keeps retrying in the background.
        """
        with self._bound():
            if not self._started:
                self._register_handlers()
                self._started = True
            logger.info(
                "chat session starting",
                extra={
                    "extra_fields": safe_log_context(
                        participant_hash=hash_identifier(self.participant_id),
                        role=self.role.value,
                    )
                },
            )
            await self.connection.connect(self.participant_id, self.role)
            if self.role == Role.AGENT:
                await self.request_active_conversations(self.conversation_filter)

    async def reconnect(self) -> None:
        """Manual retry after the reconnection policy gave up."""
        await self.start()

    async def close(self) -> None:
        """Tear down the connection. The session can be started again."""
        with self._bound():
            self.uploads.cancel()
            await self.connection.teardown()
            self._started = False
            logger.info("chat session closed")

    def _register_handlers(self) -> None:
        registry = self.connection.registry
        registry.register("history", self._on_history)
        registry.register("new_message", self._on_message)
        registry.register("message_confirmed", self._on_message)
        registry.register("active_conversations", self._on_active_conversations)
        registry.register("ticket_created", self._on_ticket_created)
        registry.register("ticket_resolved", self._on_ticket_resolved)
        registry.register("new_ticket", self._on_new_ticket)
        registry.register("error", self._on_error)

    # -- conversations -------------------------------------------------------

    async def open_conversation(
        self,
        chat_category: ChatCategory,
        ticket_id: str | None = None,
    ) -> ConversationKey:
        """Customer: show one of the user's own conversations.

        For the support category the open ticket is looked up first. When
        there is none, ``ticket_required`` is set and no history is
        requested; create_ticket() unblocks the conversation.

        Raises:
            RoleError: If called by an agent session.
        """
        if self.role != Role.CUSTOMER:
            raise RoleError("agents select conversations with select_conversation()")

        chat_category = ChatCategory(chat_category)
        with self._bound():
            key = ConversationKey.of(self.participant_id, chat_category, ticket_id)
            if chat_category == ChatCategory.SUPPORT and ticket_id is None:
                try:
                    ticket = await self._require_ticket()
                except TicketRequiredError:
                    self.timeline.show(key)
                    return key
                key = key._replace(ticket_id=ticket.id)

            await self._activate(key)
            return key

    async def select_conversation(self, conversation: Conversation | ConversationKey) -> None:
        """Agent: show a conversation, load its history and mark it read."""
        if self.role != Role.AGENT:
            raise RoleError("customers open conversations with open_conversation()")

        key = conversation.key if isinstance(conversation, Conversation) else conversation
        with self._bound():
            await self._activate(key)
            await self.connection.send(
                MarkReadEvent(
                    participant_id=key.participant_id,
                    chat_category=key.chat_category,
                    ticket_id=key.ticket_id,
                )
            )
            self.conversations = [
                c.model_copy(update={"unread_count": 0}) if c.key == key else c
                for c in self.conversations
            ]

    def deselect(self) -> None:
        self.timeline.show(None)

    async def _activate(self, key: ConversationKey) -> None:
        self.timeline.show(key)
        await self.connection.send(
            RequestHistoryEvent(
                participant_id=key.participant_id,
                chat_category=key.chat_category,
                ticket_id=key.ticket_id,
            )
        )

    async def mark_read(self) -> bool:
        key = self._require_conversation()
        with self._bound():
            return await self.connection.send(
                MarkReadEvent(
                    participant_id=key.participant_id,
                    chat_category=key.chat_category,
                    ticket_id=key.ticket_id,
                )
            )

    async def request_active_conversations(self, chat_category: ChatCategory | None = None) -> None:
        """Agent: ask the socket for waiting conversations (None = all categories)."""
        self.conversation_filter = chat_category
        if chat_category is not None:
            self.conversations = [c for c in self.conversations if c.chat_category == chat_category]
        categories = [chat_category] if chat_category else list(ChatCategory)
        with self._bound():
            for category in categories:
                await self.connection.send(RequestActiveConversationsEvent(chat_category=category))

    async def refresh_conversations(self) -> None:
        """Reload the summary list over REST.

        Agents reload the active conversation list; customers reload their
        tickets, which is the summary a customer screen shows. Failures are
        kept in ``last_error``.
        """
        with self._bound():
            try:
                if self.role == Role.AGENT:
                    self.conversations = await self.api.list_active_conversations(
                        self.conversation_filter
                    )
                else:
                    self.tickets.load(await self.api.list_tickets(self.participant_id))
            except ChatApiError as e:
                self.last_error = str(e)

    def _require_conversation(self) -> ConversationKey:
        key = self.timeline.conversation
        if key is None:
            raise NoConversationError("no conversation selected")
        return key

    # -- tickets -------------------------------------------------------------

    async def _require_ticket(self) -> Ticket:
        ticket = self.tickets.open_ticket_for(self.participant_id)
        if ticket is None:
            try:
                ticket = await self.api.get_active_ticket(self.participant_id)
            except ChatApiError as e:
                self.last_error = str(e)
                raise TicketRequiredError("could not verify the open ticket") from e
            if ticket is not None:
                ticket = self.tickets.apply_created(ticket)

        if ticket is None or not ticket.is_open:
            self.ticket_required = True
            raise TicketRequiredError("an open ticket is required to write to support")

        self.ticket_required = False
        return ticket

    async def create_ticket(self, title: str, description: str) -> bool:
        """Customer: ask the server to open a support ticket.

        The ticket becomes usable when the ticket_created event arrives.
        """
        if self.role != Role.CUSTOMER:
            raise RoleError("only customers open tickets")
        with self._bound():
            return await self.connection.send(
                CreateTicketEvent(
                    participant_id=self.participant_id,
                    title=title.strip(),
                    description=description.strip(),
                )
            )

    async def resolve_ticket(self) -> bool:
        """Agent: ask the server to resolve the selected conversation's ticket.

        The selection is cleared and the list refreshed. The ticket itself
        only turns resolved when the server confirms with ticket_resolved.

        Raises:
            NoConversationError: If nothing with a ticket is selected.
        """
        if self.role != Role.AGENT:
            raise RoleError("only agents resolve tickets")
        key = self._require_conversation()
        if key.ticket_id is None:
            raise NoConversationError("selected conversation has no ticket")

        with self._bound():
            sent = await self.connection.send(
                ResolveTicketEvent(participant_id=key.participant_id, ticket_id=key.ticket_id)
            )
            if sent:
                self.deselect()
                await self.refresh_conversations()
            return sent

    # -- send path -----------------------------------------------------------

    async def send(self, body: str, files: Sequence[CandidateFile] = ()) -> SendResult:
        """Send a message in the active conversation, optimistically.

        The provisional message is in the timeline before any upload starts.
        Files that fail validation are dropped and reported; the rest upload
        in order, and the wire event is written only once all of them are up.

        Raises:
            NoConversationError: If no conversation is active.
            TicketRequiredError: Customer in support without an open ticket.
            InvalidMessageError: Nothing left to send (empty body and no
                valid file) or the body is too long.
        """
        key = self._require_conversation()

        with self._bound():
            if self.role == Role.CUSTOMER and key.chat_category == ChatCategory.SUPPORT:
                ticket = await self._require_ticket()
                if key.ticket_id != ticket.id:
                    key = key._replace(ticket_id=ticket.id)
                    await self._activate(key)

            valid, rejected = partition_valid(files)
            if rejected and not valid and not (body or "").strip():
                raise InvalidMessageError("; ".join(rejected))

            message = new_provisional_message(
                key=key,
                body=body,
                sender=self.role,
                attachments=[f.preview() for f in valid],
            )
            self.timeline.add_provisional(message)
            logger.info(
                "message queued",
                extra={
                    "extra_fields": safe_log_context(
                        temp_id=message.id,
                        body_len=len(message.body),
                        attachments=len(valid),
                        rejected=len(rejected),
                    )
                },
            )
            result = await self._deliver(message, valid)
            result.rejected = rejected + result.rejected
            return result

    async def retry(self, temp_id: str) -> SendResult:
        """Send a message that previously failed again.

        A customer support message goes through the ticket gate again and
        moves to the current open ticket if it changed meanwhile.

        Raises:
            ValueError: If temp_id is not a failed provisional message.
            TicketRequiredError: Support message and no open ticket; the
                message stays failed.
        """
        message = self.timeline.get(temp_id)
        if message is None or self.timeline.failure_reason(temp_id) is None:
            raise ValueError(f"{temp_id} is not a failed message")

        with self._bound():
            moved = False
            if self.role == Role.CUSTOMER and message.chat_category == ChatCategory.SUPPORT:
                ticket = await self._require_ticket()
                if message.ticket_id != ticket.id:
                    message = message.model_copy(update={"ticket_id": ticket.id})
                    moved = True

            files = self.timeline.clear_failed(temp_id)
            # fresh timestamp so the confirmation falls inside the window
            message = message.model_copy(update={"sent_at": utc_now()})
            if moved and self.timeline.conversation != message.conversation_key:
                await self._activate(message.conversation_key)
                self.timeline.add_provisional(message)
            else:
                self.timeline.update_provisional(message)
            return await self._deliver(message, files)

    async def _deliver(self, message: Message, files: list[CandidateFile]) -> SendResult:
        if files:
            batch = await self.uploads.upload_all(files)
            uploaded = [a for a in message.attachments if a.is_uploaded] + batch.attachments
            remaining = files[len(batch.attachments):]
            message = message.model_copy(
                update={"attachments": uploaded + [f.preview() for f in remaining]}
            )
            self.timeline.update_provisional(message)
            if not batch.ok:
                return self._fail(message, batch.errors, remaining, rejected=batch.rejected)

        if not message.ready_for_wire:
            return self._fail(message, ["attachments not uploaded"], files)

        if message.attachments:
            event = SendMessageWithAttachmentsEvent(
                participant_id=message.participant_id,
                chat_category=message.chat_category,
                body=message.body,
                attachments=message.attachments,
                ticket_id=message.ticket_id,
            )
        else:
            event = SendMessageEvent(
                participant_id=message.participant_id,
                chat_category=message.chat_category,
                body=message.body,
                ticket_id=message.ticket_id,
            )

        if not await self.connection.send(event):
            return self._fail(message, ["not connected"], [])
        return SendResult(message=message, sent=True)

    def _fail(
        self,
        message: Message,
        errors: list[str],
        files: list[CandidateFile],
        rejected: list[str] | None = None,
    ) -> SendResult:
        reason = "; ".join(errors)
        self.timeline.mark_failed(message.id, reason, files)
        self.last_error = reason
        logger.warning(
            "message not sent",
            extra={"extra_fields": safe_log_context(temp_id=message.id, errors=len(errors))},
        )
        return SendResult(message=message, sent=False, errors=list(errors), rejected=rejected or [])

    # -- receive path --------------------------------------------------------

    async def _on_history(self, event: HistoryEvent) -> None:
        self.timeline.load_history(event.messages)

    async def _on_message(self, event: NewMessageEvent | MessageConfirmedEvent) -> None:
        message = event.message
        outcome = self.timeline.apply_incoming(message)
        if outcome != ReceiveOutcome.OTHER_CONVERSATION:
            return

        await self.refresh_conversations()
        if self.role == Role.AGENT and self.timeline.conversation is None:
            logger.info(
                "auto-selecting conversation",
                extra={"extra_fields": {"chat_category": message.chat_category.value}},
            )
            await self.select_conversation(message.conversation_key)

    async def _on_active_conversations(self, event: ActiveConversationsEvent) -> None:
        previous = self.conversations
        if event.chat_category is not None:
            # a per-category reply replaces that category's slice
            previous = [c for c in previous if c.chat_category != event.chat_category]
        self.conversations = merge_conversations(previous, event.conversations)

    async def _on_ticket_created(self, event: TicketCreatedEvent) -> None:
        ticket = self.tickets.apply_created(event.ticket)
        if self.role != Role.CUSTOMER or ticket.participant_id != self.participant_id:
            return
        if not ticket.is_open:
            return

        self.ticket_required = False
        key = self.timeline.conversation
        if key is not None and key.chat_category == ChatCategory.SUPPORT and key.ticket_id != ticket.id:
            await self._activate(key._replace(ticket_id=ticket.id))

    async def _on_ticket_resolved(self, event: TicketResolvedEvent) -> None:
        self.tickets.apply_resolved(event.ticket_id, ticket=event.ticket)
        key = self.timeline.conversation
        on_screen = key is not None and key.ticket_id == event.ticket_id

        if self.role == Role.CUSTOMER:
            if on_screen:
                # the next support message needs a new ticket
                self.ticket_required = True
            return

        if on_screen:
            self.deselect()
        await self.refresh_conversations()

    async def _on_new_ticket(self, event: NewTicketEvent) -> None:
        self.tickets.apply_created(event.ticket)
        if self.role == Role.AGENT:
            await self.refresh_conversations()

    async def _on_error(self, event: ErrorEvent) -> None:
        self.last_error = event.message
        logger.warning("server reported an error", extra={"extra_fields": {"error_len": len(event.message)}})
