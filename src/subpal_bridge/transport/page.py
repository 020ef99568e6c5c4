"""
Page-context channel — mediator ↔ page-injected script over a broadcast bus.

There is no persistent connection here. Every party on the bus sees every
frame, so frames carry `source`/`target` tags and each channel keeps only
frames addressed to it by its peer. The page side may not be injected yet:
it announces itself with a ready frame, and the mediator side can poll for
that with a bounded timeout.
"""

import asyncio
import copy
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from subpal_bridge.errors import ConnectionLostError, TimeoutError
from subpal_bridge.models.envelope import PageFrame
from subpal_bridge.settings import BridgeSettings
from subpal_bridge.transport.base import ConnectionState, TransportChannel

logger = logging.getLogger(__name__)

MEDIATOR = "subpal-content-script"
PAGE_SCRIPT = "subpal-page-script"

READY_FRAME = "PAGE_SCRIPT_READY"
UNLOADED_FRAME = "PAGE_SCRIPT_UNLOADED"
REQUEST_INJECTION_FRAME = "REQUEST_INJECTION"

FrameListener = Callable[[dict[str, Any]], None]


class BroadcastBus:
    """Shared post-message surface. Listeners get their own copy on the next loop turn."""

    def __init__(self) -> None:
        self._listeners: list[FrameListener] = []

    def add_listener(self, listener: FrameListener) -> Callable[[], None]:
        self._listeners.append(listener)
        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass
        return remove

    def post(self, frame: dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(self._dispatch, listener, copy.deepcopy(frame))

    def _dispatch(self, listener: FrameListener, frame: dict[str, Any]) -> None:
        if listener not in self._listeners:
            return
        try:
            listener(frame)
        except Exception:
            logger.exception("Bus listener failed")


class PageChannel(TransportChannel):
    def __init__(
        self,
        bus: BroadcastBus,
        local: str = MEDIATOR,
        remote: str = PAGE_SCRIPT,
        wait_timeout: float = 10.0,
        poll_interval: float = 0.5,
    ):
        super().__init__()
        self._bus = bus
        self._local = local
        self._remote = remote
        self._wait_timeout = wait_timeout
        self._poll_interval = poll_interval
        self._available = False
        self._remove_listener: Optional[Callable[[], None]] = bus.add_listener(self._on_frame)

    @classmethod
    def from_settings(
        cls, bus: BroadcastBus, settings: BridgeSettings, local: str = MEDIATOR, remote: str = PAGE_SCRIPT,
    ) -> "PageChannel":
        return cls(bus, local, remote, wait_timeout=settings.page_wait_timeout, poll_interval=settings.page_poll_interval)

    def is_available(self) -> bool:
        return self._available

    async def open(self) -> None:
        """Connected once the peer has announced itself."""
        if self._remove_listener is None:
            self._remove_listener = self._bus.add_listener(self._on_frame)
        if not self._available:
            await self.wait_until_available()

    async def wait_until_available(self, timeout: Optional[float] = None) -> bool:
        """Poll for the peer's announcement. Raises TimeoutError when it never comes."""
        timeout = self._wait_timeout if timeout is None else timeout
        if self._available:
            return True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            await asyncio.sleep(min(self._poll_interval, deadline - loop.time()))
            if self._available:
                return True
        raise TimeoutError(f"Page script load timeout after {timeout}s")

    async def request_injection(self, timeout: Optional[float] = None) -> None:
        """Ask the mediator's injector to insert the page script, then wait for it."""
        if self._available:
            logger.debug("Page script already available")
            return
        self._bus.post({"source": self._local, "type": REQUEST_INJECTION_FRAME})
        await self.wait_until_available(timeout)
        logger.debug("Page script injected")

    def announce(self) -> None:
        """Page side: tell the peer this script is loaded and listening."""
        self._bus.post({"source": self._local, "type": READY_FRAME})
        self._available = True
        self._set_state(ConnectionState.CONNECTED)

    def retire(self) -> None:
        """Page side: tell the peer this script is going away."""
        self._bus.post({"source": self._local, "type": UNLOADED_FRAME})
        self._available = False
        self._set_state(ConnectionState.DISCONNECTED)

    async def send(self, message: dict[str, Any]) -> None:
        if not self._available:
            raise ConnectionLostError(f"{self._remote} is not available")
        self._bus.post({**message, "source": self._local, "target": self._remote})

    async def close(self) -> None:
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None
        self._available = False
        self._set_state(ConnectionState.DISCONNECTED)

    def _on_frame(self, raw: dict[str, Any]) -> None:
        try:
            frame = PageFrame.model_validate(raw)
        except PydanticValidationError:
            return
        if frame.source != self._remote:
            return

        if frame.target is None:
            if frame.type == READY_FRAME:
                self._available = True
                self._set_state(ConnectionState.CONNECTED)
            elif frame.type == UNLOADED_FRAME:
                self._available = False
                self._set_state(ConnectionState.DISCONNECTED)
            return

        if frame.target != self._local:
            return
        self._deliver({k: v for k, v in raw.items() if k not in ("source", "target")})
