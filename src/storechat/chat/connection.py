"""Connection manager: socket lifecycle, identify handshake and reconnection.

One ConnectionManager per mounted chat screen. It is created and owned by a
ChatSession and torn down with it; there is no module-level socket.

States:
    idle -> connecting -> open
    connecting -> closed            (handshake failure, connect() raises)
    open -> closed                  (remote close / network drop)
    closed -> connecting            (reconnection timer, attempts remaining)
    any -> idle                     (teardown)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from storechat.observability.logging import get_logger
from storechat.observability.redaction import hash_identifier, safe_log_context

from .dispatch import EventRegistry
from .events import IdentifyEvent, InvalidEventError, WireEvent, parse_event
from .models import Role
from .transport import Transport, TransportClosed, TransportError, TransportFactory, open_websocket

logger = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 15.0


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class ConnectionHandshakeError(Exception):
    """Raised by connect() when the socket could not be opened."""

    pass


class ConnectionInFlightError(Exception):
    """Raised by connect() while another connect is still in progress."""

    pass


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff with a delay cap and an attempt ceiling.

    Attributes:
        max_attempts: Consecutive failed attempts after which reconnection
            stops for good (until connect() is called again).
        base_delay: Delay before attempt 1, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnection attempt number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


SleepFn = Callable[[float], Awaitable[None]]
StateListener = Callable[[ConnectionState], None]


class ConnectionManager:
    """Owns one socket for one participant and keeps it alive.

    Args:
        url: Socket endpoint.
        registry: Dispatch registry that receives parsed inbound events.
        policy: Reconnection policy.
        transport_factory: Coroutine opening a Transport for a URL.
        connect_timeout: Handshake timeout in seconds.
        sleep: Awaitable used for reconnection delays (injectable for tests).
        on_state_change: Called synchronously on every state transition.
    """

    def __init__(
        self,
        url: str,
        *,
        registry: EventRegistry | None = None,
        policy: ReconnectPolicy | None = None,
        transport_factory: TransportFactory | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        sleep: SleepFn = asyncio.sleep,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._url = url
        self.registry = registry or EventRegistry()
        self.policy = policy or ReconnectPolicy()
        self._transport_factory = transport_factory or open_websocket
        self._connect_timeout = connect_timeout
        self._sleep = sleep
        self._on_state_change = on_state_change

        self._state = ConnectionState.IDLE
        self._transport: Transport | None = None
        self._identity: tuple[str, Role] | None = None
        self._attempt = 0
        self._exhausted = False
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()

    # -- properties --------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def reconnect_attempt(self) -> int:
        return self._attempt

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def reconnect_exhausted(self) -> bool:
        """True once the policy gave up; the owner should show 'disconnected'."""
        return self._exhausted

    # -- public API --------------------------------------------------------

    async def connect(self, participant_id: str, role: Role) -> None:
        """Open the socket and send the identify event.

        Returns as soon as identify has been written; the server does not
        acknowledge it. A call while already open is a no-op.

        Raises:
            ConnectionInFlightError: If another connect is in progress.
            ConnectionHandshakeError: If the socket could not be opened. A
                reconnection is scheduled before this is raised.
        """
        if self._state == ConnectionState.OPEN:
            return
        if self._state == ConnectionState.CONNECTING:
            raise ConnectionInFlightError("a connection attempt is already in flight")

        self._identity = (participant_id, Role(role))
        # manual connect starts a fresh reconnection budget
        self._cancel_reconnect()
        self._attempt = 0
        self._exhausted = False
        await self._open()

    async def teardown(self) -> None:
        """Close the socket, stop reconnecting and drop every handler.

        Safe to call in any state, including idle.
        """
        self._identity = None
        self._cancel_reconnect()
        await self._stop_reader()

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except (TransportError, OSError) as e:
                logger.warning(
                    "error closing socket during teardown",
                    extra={"extra_fields": {"error_type": type(e).__name__}},
                )

        self.registry.clear()
        self._attempt = 0
        self._exhausted = False
        self._set_state(ConnectionState.IDLE)
        logger.info("connection torn down")

    async def send(self, event: WireEvent) -> bool:
        """Write one event to the socket.

        Fire and forget: when the socket is not open the event is dropped and
        a warning is logged. Sends are serialized in call order.

        Returns:
            True if the frame was written, False if it was dropped.
        """
        if self._state != ConnectionState.OPEN or self._transport is None:
            logger.warning(
                "send dropped: socket not open",
                extra={"extra_fields": {"event_type": event.type, "state": self._state.value}},
            )
            return False

        frame = event.to_wire()
        async with self._send_lock:
            transport = self._transport
            if transport is None:
                return False
            try:
                await transport.send(frame)
            except TransportError as e:
                logger.error(
                    "send failed",
                    extra={
                        "extra_fields": {
                            "event_type": event.type,
                            "error_type": type(e).__name__,
                        }
                    },
                )
                return False
        return True

    # -- lifecycle internals ----------------------------------------------

    async def _open(self) -> None:
        assert self._identity is not None
        participant_id, role = self._identity
        log_ctx = safe_log_context(
            participant_hash=hash_identifier(participant_id),
            role=role.value,
            attempt=self._attempt,
        )

        self._set_state(ConnectionState.CONNECTING)
        logger.info("opening socket", extra={"extra_fields": log_ctx})

        try:
            transport = await asyncio.wait_for(
                self._transport_factory(self._url), timeout=self._connect_timeout
            )
        except (TransportError, OSError, asyncio.TimeoutError) as e:
            if self._state != ConnectionState.CONNECTING:
                # torn down while we were waiting
                raise ConnectionHandshakeError("connection cancelled by teardown") from e
            self._set_state(ConnectionState.CLOSED)
            logger.warning(
                "socket handshake failed",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            self._schedule_reconnect()
            raise ConnectionHandshakeError(f"handshake failed: {type(e).__name__}") from e

        if self._state != ConnectionState.CONNECTING or self._identity is None:
            # teardown ran during the handshake
            await transport.close()
            raise ConnectionHandshakeError("connection cancelled by teardown")

        self._transport = transport
        self._attempt = 0
        self._exhausted = False
        self._set_state(ConnectionState.OPEN)
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(transport))

        await self.send(IdentifyEvent(participant_id=participant_id, role=role))
        logger.info("socket open", extra={"extra_fields": log_ctx})

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                frame = await transport.recv()
                try:
                    event = parse_event(frame)
                except InvalidEventError as e:
                    logger.warning(
                        "dropping inbound frame",
                        extra={"extra_fields": {"reason": str(e), "frame_len": len(frame)}},
                    )
                    continue
                await self.registry.dispatch(event)
        except TransportClosed:
            logger.info("socket closed by peer")
        except (TransportError, OSError) as e:
            logger.warning(
                "socket read failed",
                extra={"extra_fields": {"error_type": type(e).__name__}},
            )
        self._handle_drop(transport)

    def _handle_drop(self, transport: Transport) -> None:
        if self._transport is not transport:
            return
        self._transport = None
        self._reader_task = None
        self._set_state(ConnectionState.CLOSED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._identity is None:
            return
        if self._attempt >= self.policy.max_attempts:
            self._reconnect_task = None
            self._exhausted = True
            logger.warning(
                "reconnection attempts exhausted",
                extra={"extra_fields": {"attempts": self._attempt}},
            )
            return

        self._attempt += 1
        delay = self.policy.delay_for(self._attempt)
        logger.info(
            "reconnection scheduled",
            extra={"extra_fields": {"attempt": self._attempt, "delay_s": delay}},
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay)
        )

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._reconnect_task = None
        if self._identity is None or self._state != ConnectionState.CLOSED:
            return
        try:
            await self._open()
        except ConnectionHandshakeError:
            # _open already scheduled the next attempt (or gave up)
            pass

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _stop_reader(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # teardown from inside a handler; the loop exits on the closed socket
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)
