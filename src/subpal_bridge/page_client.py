"""
Page-side client — what the injected page script calls to reach the queue
manager and config living in the mediator.
"""

from typing import Any, Optional

from subpal_bridge.correlation import CorrelationEngine
from subpal_bridge.errors import ValidationError
from subpal_bridge.transport.page import PageChannel


def _require_item_id(item_id: Any) -> str:
    if not isinstance(item_id, str) or not item_id:
        raise ValidationError("itemId is required")
    return item_id


class PageClient:
    def __init__(self, channel: PageChannel, engine: Optional[CorrelationEngine] = None):
        self._channel = channel
        self._engine = engine or CorrelationEngine(channel, id_prefix="page")

    @property
    def engine(self) -> CorrelationEngine:
        return self._engine

    async def ensure_ready(self, timeout: Optional[float] = None) -> None:
        """Wait until the mediator end is listening."""
        if not self._channel.is_available():
            await self._channel.wait_until_available(timeout)

    async def _call(self, message_type: str, payload: Any = None) -> dict[str, Any]:
        return await self._engine.send(message_type, payload)

    # Votes

    async def enqueue_vote(self, data: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError("vote data must be an object")
        return await self._call("VOTE_ENQUEUE", data)

    async def get_vote_history(self, limit: int = 100) -> list[dict[str, Any]]:
        return (await self._call("VOTE_GET_HISTORY", {"limit": limit})).get("history", [])

    async def get_vote_status(self, item_id: str) -> dict[str, Any]:
        return await self._call("VOTE_GET_STATUS", {"itemId": _require_item_id(item_id)})

    async def retry_vote(self, item_id: str) -> dict[str, Any]:
        return await self._call("VOTE_RETRY", {"itemId": _require_item_id(item_id)})

    # Translations

    async def enqueue_translation(self, data: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError("translation data must be an object")
        return await self._call("TRANSLATION_ENQUEUE", data)

    async def get_translation_history(self, limit: int = 100) -> list[dict[str, Any]]:
        return (await self._call("TRANSLATION_GET_HISTORY", {"limit": limit})).get("history", [])

    async def get_translation_status(self, item_id: str) -> dict[str, Any]:
        return await self._call("TRANSLATION_GET_STATUS", {"itemId": _require_item_id(item_id)})

    async def retry_translation(self, item_id: str) -> dict[str, Any]:
        return await self._call("TRANSLATION_RETRY", {"itemId": _require_item_id(item_id)})

    # Queue overview

    async def get_all_pending(self) -> dict[str, Any]:
        body = await self._call("GET_ALL_PENDING")
        return {"votes": body.get("votes", []), "translations": body.get("translations", [])}

    async def get_queue_stats(self) -> dict[str, Any]:
        body = await self._call("GET_QUEUE_STATS")
        return {"votes": body.get("votes", {}), "translations": body.get("translations", {})}

    # Config

    async def get_config(self, key: Optional[str] = None) -> Any:
        if key is None:
            return (await self._call("CONFIG_GET_ALL")).get("config", {})
        return (await self._call("CONFIG_GET", {"key": key})).get("value")

    async def set_config(self, key_or_items: Any, value: Any = None) -> None:
        if isinstance(key_or_items, dict):
            await self._call("CONFIG_SET_MULTIPLE", {"items": key_or_items})
        else:
            await self._call("CONFIG_SET", {"key": key_or_items, "value": value})

    def close(self) -> None:
        self._engine.close()
