"""
Settings and the runtime config contract.

`BridgeSettings` holds the tunables, overridable from `SUBPAL_*` environment
variables. `ConfigSource` is the narrow interface the bridge uses to read and
watch user-facing configuration owned by another component.
"""

import logging
from typing import Any, Callable, Iterable, Optional, Protocol

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class BridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SUBPAL_", env_file=".env", extra="ignore")

    # Correlation
    default_timeout: float = 10.0
    message_timeouts: dict[str, float] = {
        "CHECK_SUBTITLE": 30.0,
        "SUBMIT_TRANSLATION": 20.0,
        "PROCESS_VOTE": 15.0,
    }

    # Connection lifecycle
    reconnect_delay: float = 1.0
    important_types: list[str] = ["SUBMIT_TRANSLATION", "PROCESS_VOTE"]
    max_buffered_messages: int = 50
    buffer_ttl: float = 60.0  # 1 minute

    # Submission queue
    max_retries: int = 3
    retry_delay: float = 1.0
    batch_size: int = 5
    batch_delay: float = 0.1
    drain_delay: float = 0.0
    vote_dedup_window: float = 180.0         # 3 minutes
    translation_dedup_window: float = 300.0  # 5 minutes
    vote_queue_size: int = 50
    translation_queue_size: int = 100
    history_limit: int = 100

    # Page channel
    page_wait_timeout: float = 10.0
    page_poll_interval: float = 0.5
    page_forward_types: list[str] = []

    # Background API
    api_base_url: str = "http://localhost:3000/api"
    api_token: Optional[str] = None
    api_timeout: float = 30.0

    # Logging
    log_level: str = "INFO"


ConfigListener = Callable[[str, Any, Any], None]


class ConfigSource(Protocol):
    def get(self, key: str) -> Any: ...

    def get_all(self) -> dict[str, Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def set_many(self, items: dict[str, Any]) -> None: ...

    def subscribe(self, keys: Iterable[str], callback: ConfigListener) -> Callable[[], None]: ...


class MemoryConfigSource:
    """Dict-backed ConfigSource. Listeners get (key, new, old) for changed keys only."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._values: dict[str, Any] = dict(initial or {})
        self._listeners: list[tuple[frozenset[str], ConfigListener]] = []

    def get(self, key: str) -> Any:
        return self._values.get(key)

    def get_all(self) -> dict[str, Any]:
        return dict(self._values)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, items: dict[str, Any]) -> None:
        changes = []
        for key, value in items.items():
            old = self._values.get(key)
            self._values[key] = value
            if old != value:
                changes.append((key, value, old))
        for key, new, old in changes:
            self._notify(key, new, old)

    def subscribe(self, keys: Iterable[str], callback: ConfigListener) -> Callable[[], None]:
        entry = (frozenset(keys), callback)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(entry)
            except ValueError:
                pass
        return unsubscribe

    def _notify(self, key: str, new: Any, old: Any) -> None:
        for keys, callback in list(self._listeners):
            if key not in keys:
                continue
            try:
                callback(key, new, old)
            except Exception:
                logger.exception("Config listener failed for %s", key)
