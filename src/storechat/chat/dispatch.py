"""Event dispatch registry: event type -> ordered handlers, plus a wildcard."""

from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

from storechat.observability.logging import get_logger

from .events import InboundEvent

logger = get_logger(__name__)

WILDCARD = "*"

EventHandler = Callable[[InboundEvent], Union[None, Awaitable[None]]]


class EventRegistry:
    """Publish/subscribe table for inbound socket events.

    Handlers registered for an exact type run first, in registration order,
    then the wildcard handlers. A handler that raises is logged and does not
    stop the others. Handlers may be plain functions or coroutine functions.

    The registry survives reconnections; only clear() (called by the
    connection manager's teardown) empties it.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def register(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def unregister(self, event_type: str, handler: EventHandler) -> None:
        """Remove the first registration of handler (by identity). No-op if absent."""
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        for i, registered in enumerate(handlers):
            if registered is handler:
                del handlers[i]
                break
        if not handlers:
            del self._handlers[event_type]

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        return list(self._handlers.get(event_type, ()))

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return sum(len(h) for h in self._handlers.values())

    async def dispatch(self, event: InboundEvent) -> int:
        """Invoke every handler for event.type, then the wildcard handlers.

        Returns:
            Number of handlers that completed without raising.
        """
        # snapshot so handlers may (un)register while we iterate
        handlers = self.handlers_for(event.type)
        if event.type != WILDCARD:
            handlers += self.handlers_for(WILDCARD)

        completed = 0
        for handler in handlers:
            if await self._invoke(handler, event):
                completed += 1
        return completed

    async def _invoke(self, handler: EventHandler, event: InboundEvent) -> bool:
        try:
            result: Any = handler(event)
            if inspect.isawaitable(result):
                await result
            return True
        except Exception:
            logger.exception(
                "event handler failed",
                extra={
                    "extra_fields": {
                        "event_type": event.type,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                    }
                },
            )
            return False
