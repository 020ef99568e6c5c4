"""
Queue persistence. Each kind is stored as an array under its own key
(`voteQueue`, `translationQueue`) so a restarted context can resume draining.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, Union

from subpal_bridge.models.submission import QueueItem, SubmissionKind

logger = logging.getLogger(__name__)

STORAGE_KEYS: dict[SubmissionKind, str] = {
    SubmissionKind.VOTE: "voteQueue",
    SubmissionKind.TRANSLATION: "translationQueue",
}


class QueueStore(Protocol):
    async def load(self, kind: SubmissionKind) -> list[QueueItem]: ...

    async def save(self, kind: SubmissionKind, items: list[QueueItem]) -> None: ...


def _dump(items: list[QueueItem]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def _load(raw: Any, key: str) -> list[QueueItem]:
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        try:
            items.append(QueueItem.model_validate(entry))
        except ValueError as e:
            logger.warning("Skipping unreadable %s entry: %s", key, e)
    return items


class MemoryQueueStore:
    def __init__(self) -> None:
        self.data: dict[str, list[dict[str, Any]]] = {}

    async def load(self, kind: SubmissionKind) -> list[QueueItem]:
        key = STORAGE_KEYS[kind]
        return _load(self.data.get(key), key)

    async def save(self, kind: SubmissionKind, items: list[QueueItem]) -> None:
        self.data[STORAGE_KEYS[kind]] = _dump(items)


class JsonFileQueueStore:
    """All queues in one JSON object on disk, replaced atomically on every save.

    File access runs in a worker thread so the event loop never blocks on disk.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    async def load(self, kind: SubmissionKind) -> list[QueueItem]:
        key = STORAGE_KEYS[kind]
        async with self._lock:
            data = await asyncio.to_thread(self._read)
        return _load(data.get(key), key)

    async def save(self, kind: SubmissionKind, items: list[QueueItem]) -> None:
        entries = _dump(items)
        async with self._lock:
            await asyncio.to_thread(self._write, STORAGE_KEYS[kind], entries)

    def _write(self, key: str, entries: list[dict[str, Any]]) -> None:
        data = self._read()
        data[key] = entries
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self._path)
        except BaseException:
            os.unlink(tmp)
            raise

    def _read(self) -> dict[str, Any]:
        try:
            with self._path.open(encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.warning("Queue file %s is corrupt, starting empty: %s", self._path, e)
            return {}
        return data if isinstance(data, dict) else {}
