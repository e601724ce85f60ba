from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from fleetsync_mcp.utils.clock import utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]


class EventBus:
    """Simple thread-safe pub/sub bus for supervisor notifications.

    Listeners subscribe to an event type (or "*" for all events) and receive
    a dict with the event data. Publishing happens on the caller's thread; a
    failing listener is logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._mu = threading.Lock()

    def subscribe(self, event_type: str, listener: Listener) -> None:
        with self._mu:
            self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        with self._mu:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Fire an event to all matching listeners."""
        event = {
            "type": event_type,
            "timestamp": utc_now().isoformat(),
            **data,
        }

        with self._mu:
            targets = [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]

        for listener in targets:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener error for %s", event_type)
