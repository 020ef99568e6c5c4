"""
Socket.IO channel — the persistent mediator→background connection.

Waits for a `ready` event before reporting connected. The client's own
reconnection is disabled; ConnectionManager decides when to reopen.
"""

import asyncio
import logging
from typing import Any, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketConnectError, SocketIOError

from subpal_bridge.errors import ConnectionLostError, TimeoutError
from subpal_bridge.transport.base import ConnectionState, TransportChannel

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "/socket.io/"
MESSAGE_EVENT = "message"
RESPONSE_EVENT = "response"


class SocketIOChannel(TransportChannel):
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
        socketio_path: str = SOCKETIO_PATH,
    ):
        super().__init__()
        self._base_url = base_url
        self._token = token
        self._transports = transports or ["websocket"]
        self._ready_timeout = ready_timeout
        self._socketio_path = socketio_path
        self._sio: Optional[socketio.AsyncClient] = None

    async def open(self) -> None:
        """Connect and wait for the background's `ready` event."""
        if self._sio and self._sio.connected and self.connected:
            return

        self._set_state(ConnectionState.CONNECTING)
        self._sio = socketio.AsyncClient(reconnection=False)
        ready_event = asyncio.Event()

        @self._sio.on("ready")
        async def on_ready(*_args: Any) -> None:
            ready_event.set()

        @self._sio.on(MESSAGE_EVENT)
        async def on_message(data: Any) -> None:
            if isinstance(data, dict):
                self._deliver(data)

        @self._sio.on(RESPONSE_EVENT)
        async def on_response(data: Any) -> None:
            if isinstance(data, dict):
                self._deliver(data)

        @self._sio.event
        async def disconnect(*_args: Any) -> None:
            self._set_state(ConnectionState.DISCONNECTED)

        try:
            await self._sio.connect(
                self._base_url,
                auth={"token": self._token} if self._token else None,
                transports=self._transports,
                socketio_path=self._socketio_path,
            )
        except SocketConnectError as e:
            self._set_state(ConnectionState.DISCONNECTED)
            raise ConnectionLostError(f"Socket.IO connect failed: {e}")

        try:
            await asyncio.wait_for(ready_event.wait(), timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            await self._sio.disconnect()
            self._set_state(ConnectionState.DISCONNECTED)
            raise TimeoutError(f"Timed out waiting for 'ready' event after {self._ready_timeout}s")

        self._set_state(ConnectionState.CONNECTED)

    async def send(self, message: dict[str, Any]) -> None:
        if not self._sio or not self._sio.connected:
            raise ConnectionLostError("Socket.IO not connected")
        try:
            await self._sio.emit(MESSAGE_EVENT, message)
        except SocketIOError as e:
            logger.error("Emit failed for %s: %s", message.get("type"), e)
            raise ConnectionLostError(f"Emit failed: {e}")

    async def close(self) -> None:
        sio, self._sio = self._sio, None
        if sio:
            await sio.disconnect()
        self._set_state(ConnectionState.DISCONNECTED)
