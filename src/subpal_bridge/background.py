"""
Background-side service: the privileged end of the mediator connection.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from subpal_bridge import errors
from subpal_bridge.responder import Responder
from subpal_bridge.settings import BridgeSettings
from subpal_bridge.transport.base import TransportChannel
from subpal_bridge.transport.http import SubmissionApi

logger = logging.getLogger(__name__)

ApiCall = Callable[[dict[str, Any]], Awaitable[Any]]


class BackgroundService:
    """Answers PROCESS_VOTE / SUBMIT_TRANSLATION by calling the subtitle service."""

    def __init__(self, channel: TransportChannel, api: SubmissionApi, owns_api: bool = False):
        self._handlers: dict[str, ApiCall] = {
            "PROCESS_VOTE": api.submit_vote,
            "SUBMIT_TRANSLATION": api.submit_translation,
        }
        self._owned_api: Optional[SubmissionApi] = api if owns_api else None
        self._responder = Responder(channel, self.dispatch)

    @classmethod
    def from_settings(
        cls,
        channel: TransportChannel,
        settings: Optional[BridgeSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "BackgroundService":
        """Build the service with its own API client; `close()` also closes the client."""
        api = SubmissionApi.from_settings(settings or BridgeSettings(), transport)
        return cls(channel, api, owns_api=True)

    async def dispatch(self, message_type: str, payload: Any) -> dict[str, Any]:
        handler = self._handlers.get(message_type)
        if handler is None:
            logger.warning("No background handler for %s", message_type)
            return errors.error_body(errors.NotFoundError(f"Unknown message type: {message_type}"))
        if not isinstance(payload, dict):
            return errors.error_body(errors.ValidationError(f"{message_type} requires an object payload"))
        data = await handler(payload)
        logger.info("%s accepted", message_type)
        return {"success": True, "data": data}

    async def close(self) -> None:
        await self._responder.close()
        if self._owned_api is not None:
            await self._owned_api.close()
            self._owned_api = None
