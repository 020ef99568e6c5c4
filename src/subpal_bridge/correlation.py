"""
Correlation engine — request/response matching over one Transport Channel.

Every outgoing request gets a fresh id and a PendingRequest with a timer from
the per-type timeout table. The first of {response, timeout, connection loss,
caller cancellation} settles it; anything arriving later for that id is
logged and dropped. Outstanding requests are independent and matched purely
by id, so completion order is whatever the remote side produces.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Mapping, Optional

from subpal_bridge import errors
from subpal_bridge.transport.base import TransportChannel
from subpal_bridge.transport.envelope import build_envelope, new_message_id, parse_response

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0

MESSAGE_TIMEOUTS: dict[str, float] = {
    "CHECK_SUBTITLE": 30.0,
    "SUBMIT_TRANSLATION": 20.0,
    "PROCESS_VOTE": 15.0,
}


class PendingRequest:
    __slots__ = ("id", "message_type", "created_at", "future", "timer")

    def __init__(self, id: str, message_type: str, future: asyncio.Future, timer: asyncio.TimerHandle):
        self.id = id
        self.message_type = message_type
        self.created_at = time.monotonic()
        self.future = future
        self.timer = timer

    def __repr__(self) -> str:
        return f"PendingRequest(id={self.id!r}, type={self.message_type!r})"


class CorrelationEngine:
    def __init__(
        self,
        channel: TransportChannel,
        timeouts: Optional[Mapping[str, float]] = None,
        default_timeout: float = DEFAULT_TIMEOUT_S,
        id_prefix: str = "msg",
    ):
        self._channel = channel
        self._timeouts = dict(MESSAGE_TIMEOUTS if timeouts is None else timeouts)
        self._default_timeout = default_timeout
        self._id_prefix = id_prefix
        self._pending: dict[str, PendingRequest] = {}
        self._remove_handler = channel.on_message(self._on_message)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def timeout_for(self, message_type: str) -> float:
        return self._timeouts.get(message_type, self._default_timeout)

    async def send(self, message_type: str, payload: Any = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Send a request and wait for its correlated response body."""
        future = await self.submit(message_type, payload, timeout)
        return await future

    async def submit(
        self, message_type: str, payload: Any = None, timeout: Optional[float] = None,
    ) -> "asyncio.Future[dict[str, Any]]":
        """Register and transmit a request; returns the future its outcome lands on."""
        loop = asyncio.get_running_loop()
        request_id = self._next_id()
        timeout_s = self.timeout_for(message_type) if timeout is None else timeout

        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        timer = loop.call_later(timeout_s, self._expire, request_id)
        self._pending[request_id] = PendingRequest(request_id, message_type, future, timer)
        future.add_done_callback(lambda f: self._on_future_done(request_id, f))
        logger.debug("Sending %s as %s (timeout %ss)", message_type, request_id, timeout_s)

        try:
            await self._channel.send(build_envelope(message_type, payload, request_id))
        except errors.BridgeError as e:
            self._settle(request_id, error=e)
        except Exception as e:
            self._settle(request_id, error=errors.ConnectionLostError(f"Send failed for {message_type}: {e}"))
        return future

    def fail_all(self, error_factory: Callable[[PendingRequest], BaseException]) -> int:
        """Reject every outstanding request. Returns how many were rejected."""
        ids = list(self._pending)
        for request_id in ids:
            pending = self._pending.get(request_id)
            if pending is not None:
                self._settle(request_id, error=error_factory(pending))
        if ids:
            logger.warning("Rejected %d pending request(s)", len(ids))
        return len(ids)

    def close(self) -> None:
        self._remove_handler()
        self.fail_all(lambda p: errors.ConnectionLostError(f"Engine closed before {p.message_type} completed"))

    def _next_id(self) -> str:
        request_id = new_message_id(self._id_prefix)
        while request_id in self._pending:
            request_id = new_message_id(self._id_prefix)
        return request_id

    def _on_message(self, raw: dict[str, Any]) -> None:
        response = parse_response(raw)
        if response is None:
            return
        body = response.response
        if body.get("error"):
            self._settle(response.id, error=errors.error_from_response(body))
        else:
            self._settle(response.id, result=body)

    def _expire(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        logger.error("Response timeout for %s (%s)", pending.message_type, request_id)
        self._settle(
            request_id,
            error=errors.TimeoutError(f"Message response timeout: {pending.message_type}", pending.message_type),
        )

    def _on_future_done(self, request_id: str, future: asyncio.Future) -> None:
        if future.cancelled() and request_id in self._pending:
            logger.debug("Caller cancelled %s", request_id)
            pending = self._pending.pop(request_id)
            pending.timer.cancel()

    def _settle(
        self, request_id: str, result: Optional[dict[str, Any]] = None, error: Optional[BaseException] = None,
    ) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug("Discarding response for unknown or settled id %s", request_id)
            return False
        pending.timer.cancel()
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result or {})
        return True
