"""Observer list for query and request feedback.

Each Glean instance owns one EventBus. Handlers are plain callables receiving
the event payload dict; they run synchronously, in subscription order, at
the point the event happens.

Events:
    query: a bound query operation is about to run.
    request_init: a request passed its arguments and is about to be queued.
    request_success: a request finished with a 2xx status.
    request_error: a request failed or finished with a non-2xx status.
    control_success / control_error: outcome of a browser control callback.
    browser_open / browser_retire / browser_close: pooled browser lifecycle.

Example::

    bus = EventBus()
    bus.on("request_error", lambda payload: print(payload["url"]))
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


class EventBus:
    """Synchronous publish/subscribe registry."""

    def __init__(
        self, handlers: Mapping[str, list[EventHandler]] | None = None
    ) -> None:
        """Initialize the bus.

        Args:
            handlers: Optional initial subscriptions by event name.
        """
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        for event, event_handlers in (handlers or {}).items():
            self._handlers[event].extend(event_handlers)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Remove a handler; unknown handlers are ignored."""
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        handlers = list(self._handlers.get(event, []))
        if handlers:
            logger.debug(f"Emitting {event} to {len(handlers)} handler(s)")

        for handler in handlers:
            handler(payload)
