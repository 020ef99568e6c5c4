"""
Submission queue manager — votes and translation suggestions that must reach
the background even when it is briefly unreachable.

Each kind has its own lane: a dedup table, a bounded FIFO of unconfirmed
items, a bounded history of decided items and monotonic counters. A
submission is sent immediately when the lane is idle and the sender is
connected; otherwise it is queued and acknowledged at once. Queued items are
drained one at a time (or in small batches after reconnection), retried on
failure and dropped after `max_retries` attempts.
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from typing import Any, Callable, Optional, Protocol, Union

from subpal_bridge import errors
from subpal_bridge.events import EventBus
from subpal_bridge.models.submission import (
    HistoryEntry,
    ItemStatus,
    QueueItem,
    QueueStats,
    SubmissionKind,
    SubmissionParams,
    format_timestamp,
    validate_params,
)
from subpal_bridge.settings import BridgeSettings
from subpal_bridge.storage import MemoryQueueStore, QueueStore
from subpal_bridge.transport.base import ConnectionState

logger = logging.getLogger(__name__)

MESSAGE_TYPES: dict[SubmissionKind, str] = {
    SubmissionKind.VOTE: "PROCESS_VOTE",
    SubmissionKind.TRANSLATION: "SUBMIT_TRANSLATION",
}

QUEUE_CHANGED = "queue_changed"
SUBMISSION_SUCCEEDED = "submission_succeeded"
SUBMISSION_FAILED = "submission_failed"
SUBMISSION_DROPPED = "submission_dropped"

KindLike = Union[SubmissionKind, str]


class Sender(Protocol):
    @property
    def connected(self) -> bool: ...

    async def send(self, message_type: str, payload: Any = None, timeout: Optional[float] = None) -> dict[str, Any]: ...

    def on_state_change(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]: ...


class _Lane:
    def __init__(self, kind: SubmissionKind, dedup_window: float, max_size: int):
        self.kind = kind
        self.message_type = MESSAGE_TYPES[kind]
        self.dedup_window = dedup_window
        self.max_size = max_size
        self.queue: deque[QueueItem] = deque()
        self.inflight: list[QueueItem] = []
        self.recent: dict[str, float] = {}
        self.history: OrderedDict[str, HistoryEntry] = OrderedDict()
        self.counters = {"total": 0, "duplicates": 0, "queued": 0, "successes": 0, "failures": 0}
        self.processing = False
        self.draining = False

    @property
    def label(self) -> str:
        return self.kind.value.capitalize()

    def size(self) -> int:
        return len(self.queue) + len(self.inflight)

    def find(self, item_id: str) -> Optional[QueueItem]:
        for item in self.inflight:
            if item.id == item_id:
                return item
        for item in self.queue:
            if item.id == item_id:
                return item
        return None


class SubmissionQueueManager:
    def __init__(
        self,
        sender: Sender,
        store: Optional[QueueStore] = None,
        bus: Optional[EventBus] = None,
        settings: Optional[BridgeSettings] = None,
    ):
        self._sender = sender
        self._store = store or MemoryQueueStore()
        self._bus = bus or EventBus()
        self._settings = settings or BridgeSettings()
        s = self._settings
        self._lanes = {
            SubmissionKind.VOTE: _Lane(SubmissionKind.VOTE, s.vote_dedup_window, s.vote_queue_size),
            SubmissionKind.TRANSLATION: _Lane(
                SubmissionKind.TRANSLATION, s.translation_dedup_window, s.translation_queue_size,
            ),
        }
        self._tasks: set[asyncio.Task[Any]] = set()
        self._remove_state_listener: Optional[Callable[[], None]] = None

    @property
    def bus(self) -> EventBus:
        return self._bus

    async def initialize(self) -> None:
        """Reload persisted queues and start draining on every reconnection."""
        for lane in self._lanes.values():
            items = await self._store.load(lane.kind)
            resumed = []
            for item in items:
                if item.status in (ItemStatus.PENDING, ItemStatus.PROCESSING):
                    item.status = ItemStatus.PENDING
                    resumed.append(item)
            if len(resumed) > lane.max_size:
                logger.warning(
                    "Dropping %d persisted %s item(s) over the queue limit of %d",
                    len(resumed) - lane.max_size, lane.kind.value, lane.max_size,
                )
            lane.queue = deque(resumed[: lane.max_size])
            if lane.queue:
                logger.info("Restored %d queued %s item(s)", len(lane.queue), lane.kind.value)
        if self._remove_state_listener is None:
            self._remove_state_listener = self._sender.on_state_change(self._on_connection_state)
        if self._sender.connected:
            for lane in self._lanes.values():
                if lane.queue:
                    self._schedule_drain(lane, batch=True)

    async def aclose(self) -> None:
        if self._remove_state_listener:
            self._remove_state_listener()
            self._remove_state_listener = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # Enqueue

    async def enqueue_vote(self, params: Any) -> dict[str, Any]:
        return await self._enqueue(self._lanes[SubmissionKind.VOTE], params)

    async def enqueue_translation(self, params: Any) -> dict[str, Any]:
        return await self._enqueue(self._lanes[SubmissionKind.TRANSLATION], params)

    async def _enqueue(self, lane: _Lane, data: Any) -> dict[str, Any]:
        lane.counters["total"] += 1
        params = validate_params(lane.kind, data)
        key = params.dedup_key()
        self._check_duplicate(lane, key)

        if lane.processing or lane.draining or not self._sender.connected:
            return await self._queue(lane, params, key)

        lane.recent[key] = time.monotonic()
        return await self._submit_now(lane, params)

    def _check_duplicate(self, lane: _Lane, key: str) -> None:
        now = time.monotonic()
        expired = [k for k, seen in lane.recent.items() if now - seen >= lane.dedup_window]
        for k in expired:
            del lane.recent[k]
        if key in lane.recent:
            lane.counters["duplicates"] += 1
            logger.info("Duplicate %s blocked: %s", lane.kind.value, key)
            raise errors.DuplicateError(f"Duplicate {lane.kind.value} submission, please try again later", key)

    async def _queue(self, lane: _Lane, params: SubmissionParams, key: str) -> dict[str, Any]:
        if lane.size() >= lane.max_size:
            logger.warning("%s queue full (%d items)", lane.label, lane.max_size)
            raise errors.QueueFullError(f"{lane.label} queue is full", lane.max_size)

        lane.recent[key] = time.monotonic()
        item = QueueItem(kind=lane.kind, payload=params.to_payload())
        lane.queue.append(item)
        lane.counters["queued"] += 1
        await self._changed(lane)
        logger.info("%s queued as %s at position %d", lane.label, item.id, lane.size())
        return {
            "success": True,
            "queued": True,
            "queuePosition": lane.size(),
            "itemId": item.id,
            "message": f"{lane.label} queued for submission",
        }

    async def _submit_now(self, lane: _Lane, params: SubmissionParams) -> dict[str, Any]:
        item = QueueItem(kind=lane.kind, payload=params.to_payload(), status=ItemStatus.PROCESSING)
        lane.processing = True
        try:
            result = await self._submit_with_retry(lane, item)
        except errors.BridgeError as e:
            lane.counters["failures"] += 1
            item.status = ItemStatus.FAILED
            item.error = e.message
            self._record(lane, item, error=e.message)
            self._bus.publish(SUBMISSION_FAILED, {
                "kind": lane.kind.value, "itemId": item.id, "error": e.message, "code": e.code,
            })
            raise
        finally:
            lane.processing = False
            self._schedule_drain(lane)

        lane.counters["successes"] += 1
        item.status = ItemStatus.SUCCESS
        self._record(lane, item, result=result)
        self._bus.publish(SUBMISSION_SUCCEEDED, {"kind": lane.kind.value, "itemId": item.id, "result": result})
        return {**result, "queued": False, "itemId": item.id}

    async def _submit_with_retry(self, lane: _Lane, item: QueueItem) -> dict[str, Any]:
        max_retries = self._settings.max_retries
        last_error: Optional[errors.BridgeError] = None
        for attempt in range(1, max_retries + 1):
            try:
                logger.debug("%s attempt %d/%d", lane.message_type, attempt, max_retries)
                return await self._attempt(lane, item)
            except (errors.ValidationError, errors.DuplicateError):
                raise
            except errors.BridgeError as e:
                last_error = e
                if attempt < max_retries:
                    delay = self._settings.retry_delay * attempt
                    logger.warning("%s failed (%s), retrying in %ss", lane.message_type, e.message, delay)
                    await asyncio.sleep(delay)
        logger.error("%s failed after %d attempts", lane.message_type, max_retries)
        raise last_error or errors.MaxRetriesExceededError(f"{lane.message_type} was never attempted", 0)

    async def _attempt(self, lane: _Lane, item: QueueItem) -> dict[str, Any]:
        body = await self._sender.send(lane.message_type, item.payload)
        if not body.get("success"):
            raise errors.RemoteError(str(body.get("error") or f"{lane.message_type} was not accepted"))
        return body

    # Drain

    async def process_next_in_queue(self, kind: KindLike) -> bool:
        """Submit the head item once. Returns False when the lane could not drain."""
        lane = self._lane(kind)
        if not self._can_drain(lane):
            return False
        lane.draining = True
        item = lane.queue.popleft()
        try:
            await self._process_item(lane, item)
        except asyncio.CancelledError:
            lane.queue.appendleft(item)
            raise
        finally:
            lane.draining = False
        if lane.queue and self._sender.connected:
            self._schedule_drain(lane)
        return True

    async def process_batch(self, kind: KindLike) -> int:
        """Submit up to `batch_size` head items with a short pause between them."""
        lane = self._lane(kind)
        if not self._can_drain(lane):
            return 0
        lane.draining = True
        batch = deque(lane.queue.popleft() for _ in range(min(self._settings.batch_size, len(lane.queue))))
        logger.info("Draining %d %s item(s)", len(batch), lane.kind.value)
        processed = 0
        current: Optional[QueueItem] = None
        try:
            while batch:
                if not self._sender.connected:
                    logger.info("Connection lost mid-batch, %d %s item(s) put back", len(batch), lane.kind.value)
                    lane.queue.extendleft(reversed(batch))
                    batch.clear()
                    await self._changed(lane)
                    break
                current = batch.popleft()
                await self._process_item(lane, current)
                current = None
                processed += 1
                if batch:
                    await asyncio.sleep(self._settings.batch_delay)
        except asyncio.CancelledError:
            unsent = ([current] if current else []) + list(batch)
            lane.queue.extendleft(reversed(unsent))
            raise
        finally:
            lane.draining = False
        if lane.queue and self._sender.connected:
            self._schedule_drain(lane, batch=True)
        return processed

    def _can_drain(self, lane: _Lane) -> bool:
        return bool(lane.queue) and not lane.processing and not lane.draining and self._sender.connected

    async def _process_item(self, lane: _Lane, item: QueueItem) -> None:
        item.status = ItemStatus.PROCESSING
        lane.inflight.append(item)
        await self._persist(lane)
        try:
            result = await self._attempt(lane, item)
        except asyncio.CancelledError:
            lane.inflight.remove(item)
            item.status = ItemStatus.PENDING
            raise
        except Exception as e:
            if not isinstance(e, errors.BridgeError):
                logger.exception("Unexpected error submitting %s %s", lane.kind.value, item.id)
            lane.inflight.remove(item)
            self._on_item_failed(lane, item, e)
        else:
            lane.inflight.remove(item)
            lane.counters["successes"] += 1
            item.status = ItemStatus.SUCCESS
            item.error = None
            self._record(lane, item, result=result)
            logger.info("Queued %s %s submitted", lane.kind.value, item.id)
            self._bus.publish(SUBMISSION_SUCCEEDED, {"kind": lane.kind.value, "itemId": item.id, "result": result})
        await self._changed(lane)

    def _on_item_failed(self, lane: _Lane, item: QueueItem, error: Exception) -> None:
        item.retry_count += 1
        item.error = error.message if isinstance(error, errors.BridgeError) else str(error) or type(error).__name__
        terminal = isinstance(error, errors.ValidationError) or item.retry_count >= self._settings.max_retries
        if not terminal:
            item.status = ItemStatus.PENDING
            lane.queue.append(item)
            logger.warning(
                "Queued %s %s failed (%s), retry %d/%d",
                lane.kind.value, item.id, item.error, item.retry_count, self._settings.max_retries,
            )
            self._bus.publish(SUBMISSION_FAILED, {
                "kind": lane.kind.value, "itemId": item.id, "error": item.error, "retryCount": item.retry_count,
            })
            return

        dropped = errors.MaxRetriesExceededError(
            f"{lane.label} {item.id} dropped after {item.retry_count} attempt(s)", item.retry_count, item.error,
        )
        item.status = ItemStatus.FAILED
        lane.counters["failures"] += 1
        self._record(lane, item, error=item.error)
        logger.error(dropped.message)
        self._bus.publish(SUBMISSION_DROPPED, {
            "kind": lane.kind.value, "itemId": item.id, "error": item.error,
            "code": dropped.code, "attempts": item.retry_count,
        })

    def _schedule_drain(self, lane: _Lane, delay: float = 0.0, batch: bool = False) -> None:
        if not lane.queue:
            return

        async def drain() -> None:
            if delay:
                await asyncio.sleep(delay)
            if batch:
                await self.process_batch(lane.kind)
            else:
                await self.process_next_in_queue(lane.kind)

        task = asyncio.get_running_loop().create_task(drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTED:
            return
        for lane in self._lanes.values():
            if lane.queue:
                logger.info("Reconnected, draining %d %s item(s)", len(lane.queue), lane.kind.value)
                self._schedule_drain(lane, delay=self._settings.drain_delay, batch=True)

    # History

    def _record(
        self, lane: _Lane, item: QueueItem, result: Optional[dict[str, Any]] = None, error: Optional[str] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            item_id=item.id,
            kind=lane.kind,
            subject=item.subject,
            timestamp=item.payload.get("timestamp", 0),
            status=item.status,
            payload=item.payload,
            result=result,
            error=error,
        )
        key = item.history_key
        lane.history[key] = entry
        lane.history.move_to_end(key)
        while len(lane.history) > self._settings.history_limit:
            lane.history.popitem(last=False)
        return entry

    def get_history(self, kind: KindLike, limit: int = 100) -> list[HistoryEntry]:
        """Most recent decisions first."""
        entries = list(reversed(self._lane(kind).history.values()))
        return entries[: max(0, limit)]

    def get_decision(self, kind: KindLike, subject: str, timestamp: Union[int, float]) -> Optional[HistoryEntry]:
        return self._lane(kind).history.get(f"{subject}_{format_timestamp(timestamp)}")

    def get_user_vote_status(self, video_id: str, timestamp: Union[int, float]) -> dict[str, Any]:
        entry = self.get_decision(SubmissionKind.VOTE, video_id, timestamp)
        if entry is None or entry.status is not ItemStatus.SUCCESS:
            return {"hasVoted": False, "voteType": None, "voteTime": None}
        return {"hasVoted": True, "voteType": entry.vote_type, "voteTime": entry.decided_at}

    # Status & control

    def get_status(self, item_id: str, kind: Optional[KindLike] = None) -> dict[str, Any]:
        for lane in self._lanes_for(kind):
            item = lane.find(item_id)
            if item is not None:
                position = list(lane.queue).index(item) + 1 if item in lane.queue else None
                return {
                    "itemId": item.id, "kind": lane.kind.value, "status": item.status.value,
                    "retryCount": item.retry_count, "error": item.error, "queuePosition": position,
                }
        for lane in self._lanes_for(kind):
            for entry in lane.history.values():
                if entry.item_id == item_id:
                    return {
                        "itemId": item_id, "kind": lane.kind.value, "status": entry.status.value,
                        "error": entry.error, "decidedAt": entry.decided_at,
                    }
        raise errors.NotFoundError(f"Submission not found: {item_id}")

    async def retry(self, item_id: str, kind: Optional[KindLike] = None) -> dict[str, Any]:
        """Reset a queued item's retry count, or requeue one that was dropped."""
        for lane in self._lanes_for(kind):
            item = next((i for i in lane.queue if i.id == item_id), None)
            if item is not None:
                item.retry_count = 0
                item.error = None
                item.status = ItemStatus.PENDING
                await self._changed(lane)
                return {"success": True, "itemId": item_id, "queuePosition": list(lane.queue).index(item) + 1}

            key = next((k for k, e in lane.history.items()
                        if e.item_id == item_id and e.status is ItemStatus.FAILED), None)
            if key is not None:
                if lane.size() >= lane.max_size:
                    raise errors.QueueFullError(f"{lane.label} queue is full", lane.max_size)
                entry = lane.history.pop(key)
                lane.queue.append(QueueItem(id=item_id, kind=lane.kind, payload=entry.payload))
                await self._changed(lane)
                logger.info("Requeued dropped %s %s", lane.kind.value, item_id)
                if self._sender.connected:
                    self._schedule_drain(lane)
                return {"success": True, "itemId": item_id, "queuePosition": lane.size()}
        raise errors.NotFoundError(f"No retryable submission: {item_id}")

    def get_all_pending(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "votes": [i.model_dump(mode="json") for i in self._lanes[SubmissionKind.VOTE].queue],
            "translations": [i.model_dump(mode="json") for i in self._lanes[SubmissionKind.TRANSLATION].queue],
        }

    def get_stats(self, kind: KindLike) -> QueueStats:
        lane = self._lane(kind)
        return QueueStats(
            **lane.counters,
            queue_length=lane.size(),
            history_count=len(lane.history),
            processing=lane.processing or lane.draining,
        )

    async def clear_queue(self, kind: KindLike) -> int:
        lane = self._lane(kind)
        removed = len(lane.queue)
        lane.queue.clear()
        await self._changed(lane)
        return removed

    def clear_history(self, kind: KindLike) -> int:
        lane = self._lane(kind)
        removed = len(lane.history)
        lane.history.clear()
        return removed

    # Internals

    def _lane(self, kind: KindLike) -> _Lane:
        try:
            return self._lanes[SubmissionKind(kind)]
        except ValueError:
            raise errors.ValidationError(f"Unknown submission kind: {kind}")

    def _lanes_for(self, kind: Optional[KindLike]) -> list[_Lane]:
        return list(self._lanes.values()) if kind is None else [self._lane(kind)]

    async def _persist(self, lane: _Lane) -> None:
        try:
            await self._store.save(lane.kind, lane.inflight + list(lane.queue))
        except Exception:
            logger.exception("Persisting %s queue failed", lane.kind.value)

    async def _changed(self, lane: _Lane) -> None:
        await self._persist(lane)
        self._bus.publish(QUEUE_CHANGED, {"kind": lane.kind.value, "length": lane.size()})
