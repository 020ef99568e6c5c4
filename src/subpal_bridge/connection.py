"""
Connection lifecycle — keeps one channel alive and decides what happens to
sends while it is down.

Loss of the channel rejects every outstanding request at once and schedules
a reopen after a fixed delay, forever. While disconnected, important message
types are held in a bounded buffer and replayed in order on reconnection;
everything else fails fast. A held message that waits longer than
`buffer_ttl` is rejected with a timeout.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Iterable, Optional

from subpal_bridge import errors
from subpal_bridge.correlation import CorrelationEngine
from subpal_bridge.transport.base import ConnectionState, TransportChannel

logger = logging.getLogger(__name__)

IMPORTANT_MESSAGE_TYPES = frozenset({"SUBMIT_TRANSLATION", "PROCESS_VOTE"})
DEFAULT_RECONNECT_DELAY_S = 1.0
MAX_BUFFERED_MESSAGES = 50
BUFFER_TTL_S = 60.0

StateListener = Callable[[ConnectionState], None]


class BufferedSend:
    __slots__ = ("message_type", "payload", "timeout", "future", "queued_at", "expiry")

    def __init__(self, message_type: str, payload: Any, timeout: Optional[float], future: asyncio.Future):
        self.message_type = message_type
        self.payload = payload
        self.timeout = timeout
        self.future = future
        self.queued_at = time.monotonic()
        self.expiry: Optional[asyncio.TimerHandle] = None


class ConnectionManager:
    def __init__(
        self,
        channel: TransportChannel,
        engine: CorrelationEngine,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_S,
        important_types: Iterable[str] = IMPORTANT_MESSAGE_TYPES,
        max_buffered: int = MAX_BUFFERED_MESSAGES,
        buffer_ttl: float = BUFFER_TTL_S,
    ):
        self._channel = channel
        self._engine = engine
        self._reconnect_delay = reconnect_delay
        self._important = frozenset(important_types)
        self._max_buffered = max_buffered
        self._buffer_ttl = buffer_ttl
        self._state = ConnectionState.DISCONNECTED
        self._buffer: deque[BufferedSend] = deque()
        self._listeners: list[StateListener] = []
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._replay_task: Optional[asyncio.Task[None]] = None
        self._started = False
        self._remove_state_handler: Optional[Callable[[], None]] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Add a state listener. Returns a cleanup function."""
        self._listeners.append(listener)
        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass
        return remove

    async def start(self) -> None:
        """Open the channel. A failed first attempt falls into the reconnect loop."""
        if self._started:
            return
        self._started = True
        self._remove_state_handler = self._channel.on_state_change(self._on_channel_state)
        await self._open()

    async def stop(self) -> None:
        self._started = False
        if self._remove_state_handler:
            self._remove_state_handler()
            self._remove_state_handler = None
        for task in (self._reconnect_task, self._replay_task):
            if task and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._replay_task = None
        while self._buffer:
            self._reject(self._buffer.popleft(), errors.ConnectionLostError("Connection manager stopped"))
        self._engine.fail_all(lambda p: errors.ConnectionLostError(f"Connection closed before {p.message_type} completed"))
        await self._channel.close()
        self._set_state(ConnectionState.DISCONNECTED)

    async def send(self, message_type: str, payload: Any = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Send through the engine, or buffer/fail according to connectivity."""
        if self.connected:
            return await self._engine.send(message_type, payload, timeout)

        if message_type not in self._important:
            logger.debug("Send failed for %s, connection is down", message_type)
            raise errors.ConnectionLostError("Background connection is not available")

        if len(self._buffer) >= self._max_buffered:
            logger.warning("Send buffer full, rejecting %s", message_type)
            raise errors.QueueFullError("Message queue is full", self._max_buffered)

        loop = asyncio.get_running_loop()
        item = BufferedSend(message_type, payload, timeout, loop.create_future())
        item.expiry = loop.call_later(self._buffer_ttl, self._expire, item)
        item.future.add_done_callback(lambda f: self._on_buffered_done(item))
        self._buffer.append(item)
        logger.debug("Connection down, buffered %s (%d held)", message_type, len(self._buffer))
        return await item.future

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._channel.open()
        except Exception as e:
            logger.warning("Opening channel failed: %s", e)
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()
            return
        if self._channel.connected:
            self._on_connected()

    def _on_channel_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            self._on_connected()
        elif state is ConnectionState.DISCONNECTED and self._state is not ConnectionState.DISCONNECTED:
            self._on_lost()

    def _on_connected(self) -> None:
        if self._state is ConnectionState.CONNECTED:
            return
        if self._reconnect_task and not self._reconnect_task.done() and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connection established")
        if self._buffer and (self._replay_task is None or self._replay_task.done()):
            self._replay_task = asyncio.get_running_loop().create_task(self._replay())

    def _on_lost(self) -> None:
        was_connected = self._state is ConnectionState.CONNECTED
        self._set_state(ConnectionState.DISCONNECTED)
        rejected = self._engine.fail_all(
            lambda p: errors.ConnectionLostError(f"Background connection lost during {p.message_type}")
        )
        logger.warning("Connection lost (was connected: %s), rejected %d pending request(s)", was_connected, rejected)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self._started:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        if not self._started or self.connected:
            return
        logger.info("Reconnecting")
        self._reconnect_task = None
        await self._open()

    async def _replay(self) -> None:
        """Resend held messages in their original order through the normal send path.

        Messages buffered during a brief drop while this runs are picked up by
        the next pass, after everything held before them.
        """
        while self._buffer and self.connected:
            held, self._buffer = list(self._buffer), deque()
            logger.info("Replaying %d buffered message(s)", len(held))
            for index, item in enumerate(held):
                if item.future.done():
                    continue
                if not self.connected:
                    self._buffer.extendleft(reversed([i for i in held[index:] if not i.future.done()]))
                    logger.debug("Connection dropped during replay, %d message(s) held again", len(self._buffer))
                    return
                if item.expiry:
                    item.expiry.cancel()
                source = await self._engine.submit(item.message_type, item.payload, item.timeout)
                _chain(source, item.future)

    def _on_buffered_done(self, item: BufferedSend) -> None:
        if not item.future.cancelled():
            return
        if item.expiry:
            item.expiry.cancel()
        try:
            self._buffer.remove(item)
        except ValueError:
            return
        logger.debug("Buffered %s abandoned by its caller", item.message_type)

    def _expire(self, item: BufferedSend) -> None:
        try:
            self._buffer.remove(item)
        except ValueError:
            return
        logger.warning("Buffered %s expired after %ss", item.message_type, self._buffer_ttl)
        self._reject(item, errors.TimeoutError(f"Queued message expired: {item.message_type}", item.message_type))

    @staticmethod
    def _reject(item: BufferedSend, error: BaseException) -> None:
        if item.expiry:
            item.expiry.cancel()
        if not item.future.done():
            item.future.set_exception(error)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection state listener failed")


def _chain(source: asyncio.Future, target: asyncio.Future) -> None:
    """Copy source's outcome onto target; cancelling target cancels source."""
    def copy_outcome(f: asyncio.Future) -> None:
        if target.done():
            return
        if f.cancelled():
            target.cancel()
        elif f.exception() is not None:
            target.set_exception(f.exception())
        else:
            target.set_result(f.result())

    def propagate_cancel(f: asyncio.Future) -> None:
        if f.cancelled() and not source.done():
            source.cancel()

    source.add_done_callback(copy_outcome)
    target.add_done_callback(propagate_cancel)
