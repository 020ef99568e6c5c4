"""
Answers request envelopes arriving on a channel.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from subpal_bridge.errors import error_body
from subpal_bridge.transport.base import TransportChannel
from subpal_bridge.transport.envelope import build_response, parse_envelope

logger = logging.getLogger(__name__)

Dispatch = Callable[[str, Any], Awaitable[dict[str, Any]]]


class Responder:
    """Runs `dispatch(type, payload)` for each inbound request and sends back `{id, response}`.

    Responses arriving on the same channel are ignored; they belong to
    whatever CorrelationEngine shares it.
    """

    def __init__(self, channel: TransportChannel, dispatch: Dispatch):
        self._channel = channel
        self._dispatch = dispatch
        self._tasks: set[asyncio.Task[None]] = set()
        self._remove_handler: Optional[Callable[[], None]] = channel.on_message(self._on_message)

    def _on_message(self, raw: dict[str, Any]) -> None:
        envelope = parse_envelope(raw)
        if envelope is None:
            return
        task = asyncio.get_running_loop().create_task(self._answer(envelope.id, envelope.type, envelope.payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _answer(self, request_id: str, message_type: str, payload: Any) -> None:
        try:
            body = await self._dispatch(message_type, payload)
        except Exception as e:
            logger.warning("Handler for %s failed: %s", message_type, e)
            body = error_body(e)
        try:
            await self._channel.send(build_response(request_id, body))
        except Exception as e:
            # The requester's engine will time out or has already been failed by the disconnect.
            logger.warning("Could not answer %s (%s): %s", message_type, request_id, e)

    async def close(self) -> None:
        if self._remove_handler:
            self._remove_handler()
            self._remove_handler = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
