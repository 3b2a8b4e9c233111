"""Socket transport used by the connection manager.

The manager only talks to the Transport protocol so tests can swap in an
in-memory fake. open_websocket() is the production factory.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidURI, WebSocketException


class TransportError(Exception):
    """Raised when the socket cannot be opened or used."""

    pass


class TransportClosed(TransportError):
    """Raised by recv()/send() once the peer or the network closed the socket."""

    pass


class Transport(Protocol):
    """Bidirectional text-frame channel."""

    async def send(self, frame: str) -> None:
        ...

    async def recv(self) -> str:
        """Wait for the next frame. Raises TransportClosed when closed."""
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[str], Awaitable[Transport]]


class WebSocketTransport:
    """Transport over a websockets client connection."""

    def __init__(self, connection) -> None:
        self._ws = connection

    async def send(self, frame: str) -> None:
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise TransportClosed(f"socket closed (code={e.rcvd.code if e.rcvd else None})") from e

    async def recv(self) -> str:
        try:
            data = await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportClosed(f"socket closed (code={e.rcvd.code if e.rcvd else None})") from e
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    async def close(self) -> None:
        await self._ws.close()


async def open_websocket(url: str) -> Transport:
    """Open a websocket and wrap it as a Transport.

    The handshake timeout is enforced by the caller (ConnectionManager).

    Raises:
        TransportError: If the URL is invalid or the handshake fails.
    """
    try:
        connection = await websockets.connect(url, open_timeout=None)
    except InvalidURI as e:
        raise TransportError(f"invalid socket url: {e}") from e
    except (OSError, WebSocketException) as e:
        raise TransportError(f"socket handshake failed: {type(e).__name__}") from e
    return WebSocketTransport(connection)
