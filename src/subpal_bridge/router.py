"""
Mediator router — what the content-side context does with a request from the page.

Queue-control and config types are served locally; anything else is
forwarded to the background unchanged and its response body returned as-is.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from subpal_bridge import errors
from subpal_bridge.models.submission import SubmissionKind
from subpal_bridge.queue import SubmissionQueueManager
from subpal_bridge.settings import ConfigSource

logger = logging.getLogger(__name__)

Upstream = Callable[[str, Any], Awaitable[dict[str, Any]]]
Handler = Callable[[Any], Awaitable[dict[str, Any]]]


def _require(payload: Any, key: str) -> Any:
    if not isinstance(payload, dict) or payload.get(key) in (None, ""):
        raise errors.ValidationError(f"{key} is required")
    return payload[key]


class MessageRouter:
    def __init__(self, queue: SubmissionQueueManager, config: ConfigSource, upstream: Upstream):
        self._queue = queue
        self._config = config
        self._upstream = upstream
        self._handlers: dict[str, Handler] = {
            "VOTE_ENQUEUE": self._queue.enqueue_vote,
            "TRANSLATION_ENQUEUE": self._queue.enqueue_translation,
            "GET_ALL_PENDING": self._all_pending,
            "GET_QUEUE_STATS": self._stats,
            "CONFIG_GET": self._config_get,
            "CONFIG_GET_ALL": self._config_get_all,
            "CONFIG_SET": self._config_set,
            "CONFIG_SET_MULTIPLE": self._config_set_multiple,
        }
        for prefix, kind in (("VOTE", SubmissionKind.VOTE), ("TRANSLATION", SubmissionKind.TRANSLATION)):
            self._handlers[f"{prefix}_GET_HISTORY"] = self._history_handler(kind)
            self._handlers[f"{prefix}_GET_STATUS"] = self._status_handler(kind)
            self._handlers[f"{prefix}_RETRY"] = self._retry_handler(kind)

    async def handle(self, message_type: str, payload: Any = None) -> dict[str, Any]:
        """Serve or forward one request. Failures come back as error bodies."""
        handler: Optional[Handler] = self._handlers.get(message_type)
        try:
            if handler is not None:
                return await handler(payload)
            logger.debug("Forwarding %s upstream", message_type)
            return await self._upstream(message_type, payload)
        except errors.BridgeError as e:
            return errors.error_body(e)
        except Exception as e:
            logger.exception("Routing %s failed", message_type)
            return errors.error_body(e)

    def _history_handler(self, kind: SubmissionKind) -> Handler:
        async def history(payload: Any) -> dict[str, Any]:
            limit = payload.get("limit", 100) if isinstance(payload, dict) else 100
            if isinstance(limit, bool) or not isinstance(limit, int):
                raise errors.ValidationError("limit must be an integer")
            entries = self._queue.get_history(kind, limit)
            return {"success": True, "history": [e.model_dump(mode="json") for e in entries]}
        return history

    def _status_handler(self, kind: SubmissionKind) -> Handler:
        async def status(payload: Any) -> dict[str, Any]:
            return {"success": True, **self._queue.get_status(_require(payload, "itemId"), kind)}
        return status

    def _retry_handler(self, kind: SubmissionKind) -> Handler:
        async def retry(payload: Any) -> dict[str, Any]:
            return await self._queue.retry(_require(payload, "itemId"), kind)
        return retry

    async def _all_pending(self, _payload: Any) -> dict[str, Any]:
        return {"success": True, **self._queue.get_all_pending()}

    async def _stats(self, _payload: Any) -> dict[str, Any]:
        return {
            "success": True,
            "votes": self._queue.get_stats(SubmissionKind.VOTE).model_dump(),
            "translations": self._queue.get_stats(SubmissionKind.TRANSLATION).model_dump(),
        }

    async def _config_get(self, payload: Any) -> dict[str, Any]:
        return {"success": True, "value": self._config.get(_require(payload, "key"))}

    async def _config_get_all(self, _payload: Any) -> dict[str, Any]:
        return {"success": True, "config": self._config.get_all()}

    async def _config_set(self, payload: Any) -> dict[str, Any]:
        key = _require(payload, "key")
        self._config.set(key, payload.get("value"))
        return {"success": True}

    async def _config_set_multiple(self, payload: Any) -> dict[str, Any]:
        items = _require(payload, "items")
        if not isinstance(items, dict):
            raise errors.ValidationError("items must be an object")
        self._config.set_many(items)
        return {"success": True}
