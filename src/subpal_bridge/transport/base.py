"""
Transport Channel contract — a point-to-point pipe between two contexts.

Channels deliver opaque envelopes and report liveness. Correlation, retry and
buffering live above this layer.
"""

import logging
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], None]
StateHandler = Callable[["ConnectionState"], None]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class TransportChannel:
    """Base channel: handler bookkeeping shared by every implementation."""

    def __init__(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._message_handlers: list[MessageHandler] = []
        self._state_handlers: list[StateHandler] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    async def open(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def send(self, message: dict[str, Any]) -> None:
        raise NotImplementedError

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Add a message handler. Returns a cleanup function."""
        self._message_handlers.append(handler)
        def remove() -> None:
            try:
                self._message_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def on_state_change(self, handler: StateHandler) -> Callable[[], None]:
        """Add a connection-state handler. Returns a cleanup function."""
        self._state_handlers.append(handler)
        def remove() -> None:
            try:
                self._state_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def _deliver(self, message: dict[str, Any]) -> None:
        for handler in list(self._message_handlers):
            try:
                handler(message)
            except Exception:
                logger.exception("Message handler failed on %s", type(self).__name__)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        logger.debug("%s -> %s", type(self).__name__, state.value)
        for handler in list(self._state_handlers):
            try:
                handler(state)
            except Exception:
                logger.exception("State handler failed on %s", type(self).__name__)
