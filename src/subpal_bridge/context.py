"""
Mediator context handle — one per content-side context, built at start-up
and passed to whatever needs the bridge.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from subpal_bridge.connection import ConnectionManager
from subpal_bridge.correlation import CorrelationEngine
from subpal_bridge.events import EventBus, Subscriber
from subpal_bridge.log import bind_debug_mode
from subpal_bridge.queue import SubmissionQueueManager
from subpal_bridge.responder import Responder
from subpal_bridge.router import MessageRouter
from subpal_bridge.settings import BridgeSettings, ConfigSource, MemoryConfigSource
from subpal_bridge.storage import MemoryQueueStore, QueueStore
from subpal_bridge.transport.base import ConnectionState, TransportChannel
from subpal_bridge.transport.envelope import build_envelope, parse_envelope
from subpal_bridge.transport.page import PageChannel

logger = logging.getLogger(__name__)

CONNECTION_STATUS_EVENT = "connection_status"


class MediatorContext:
    def __init__(
        self,
        settings: BridgeSettings,
        upstream_channel: TransportChannel,
        engine: CorrelationEngine,
        connection: ConnectionManager,
        queue: SubmissionQueueManager,
        router: MessageRouter,
        config: ConfigSource,
        bus: EventBus,
        page_channel: Optional[PageChannel] = None,
    ):
        self.settings = settings
        self.upstream_channel = upstream_channel
        self.engine = engine
        self.connection = connection
        self.queue = queue
        self.router = router
        self.config = config
        self.bus = bus
        self.page_channel = page_channel
        self._responder: Optional[Responder] = None
        self._cleanups: list[Callable[[], None]] = []
        self._forwards: set[asyncio.Task[None]] = set()
        self._started = False

    @classmethod
    def create(
        cls,
        upstream_channel: TransportChannel,
        page_channel: Optional[PageChannel] = None,
        settings: Optional[BridgeSettings] = None,
        store: Optional[QueueStore] = None,
        config: Optional[ConfigSource] = None,
    ) -> "MediatorContext":
        """Wire engine → connection → queue → router for one upstream channel."""
        settings = settings or BridgeSettings()
        config = config if config is not None else MemoryConfigSource()
        bus = EventBus()
        engine = CorrelationEngine(
            upstream_channel, timeouts=settings.message_timeouts, default_timeout=settings.default_timeout,
        )
        connection = ConnectionManager(
            upstream_channel,
            engine,
            reconnect_delay=settings.reconnect_delay,
            important_types=settings.important_types,
            max_buffered=settings.max_buffered_messages,
            buffer_ttl=settings.buffer_ttl,
        )
        queue = SubmissionQueueManager(connection, store or MemoryQueueStore(), bus, settings)
        router = MessageRouter(queue, config, connection.send)
        return cls(settings, upstream_channel, engine, connection, queue, router, config, bus, page_channel)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._cleanups.append(bind_debug_mode(self.config, self.settings.log_level))
        self._cleanups.append(self.connection.on_state_change(self._broadcast_state))
        self._cleanups.append(self.upstream_channel.on_message(self._on_upstream_message))
        await self.queue.initialize()
        if self.page_channel is not None:
            self._responder = Responder(self.page_channel, self.router.handle)
        await self.connection.start()
        logger.info("Mediator context started (connected: %s)", self.connection.connected)

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        for cleanup in reversed(self._cleanups):
            cleanup()
        self._cleanups.clear()
        forwards = list(self._forwards)
        for task in forwards:
            task.cancel()
        await asyncio.gather(*forwards, return_exceptions=True)
        if self._responder:
            await self._responder.close()
            self._responder = None
        await self.queue.aclose()
        await self.connection.stop()
        self.engine.close()
        logger.info("Mediator context closed")

    def on_message(self, message_type: str, handler: Subscriber) -> Callable[[], None]:
        """Subscribe to messages pushed from upstream (or any bus event). `*` matches all."""
        return self.bus.subscribe(message_type, handler)

    async def __aenter__(self) -> "MediatorContext":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _broadcast_state(self, state: ConnectionState) -> None:
        self.bus.publish(CONNECTION_STATUS_EVENT, {"state": state.value, "connected": state is ConnectionState.CONNECTED})

    def _on_upstream_message(self, raw: dict[str, Any]) -> None:
        envelope = parse_envelope(raw)
        if envelope is None:
            return
        logger.debug("Inbound %s (%s)", envelope.type, envelope.id)
        self.bus.publish(envelope.type, envelope.payload)
        if envelope.type in self.settings.page_forward_types and self.page_channel is not None:
            frame = build_envelope(envelope.type, envelope.payload, envelope.id)
            task = asyncio.get_running_loop().create_task(self._forward_to_page(frame))
            self._forwards.add(task)
            task.add_done_callback(self._forwards.discard)

    async def _forward_to_page(self, frame: dict[str, Any]) -> None:
        if self.page_channel is None or not self.page_channel.is_available():
            logger.debug("Page script unavailable, not forwarding %s", frame["type"])
            return
        try:
            await self.page_channel.send(frame)
        except Exception as e:
            logger.warning("Forwarding %s to page failed: %s", frame["type"], e)
