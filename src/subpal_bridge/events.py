"""
Typed publish/subscribe within one context.

Subscribers for a message type run in registration order, followed by `*`
wildcard subscribers. A subscriber that raises is logged and skipped.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

WILDCARD = "*"

Subscriber = Callable[[str, Any], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, event_type: str, handler: Subscriber) -> Callable[[], None]:
        """Register a handler. Returns an unsubscribe function."""
        handlers = self._subscribers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

        def unsubscribe() -> None:
            try:
                self._subscribers.get(event_type, []).remove(handler)
            except ValueError:
                pass
        return unsubscribe

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    def publish(self, event_type: str, data: Any = None) -> int:
        """Deliver to every subscriber; returns how many handlers ran cleanly."""
        handlers = list(self._subscribers.get(event_type, []))
        if event_type != WILDCARD:
            handlers += [h for h in self._subscribers.get(WILDCARD, []) if h not in handlers]
        if not handlers:
            logger.debug("No subscribers for %s", event_type)
            return 0
        ok = 0
        for handler in handlers:
            try:
                handler(event_type, data)
                ok += 1
            except Exception:
                logger.exception("Subscriber failed for %s", event_type)
        return ok
