"""Submission queue manager."""

import asyncio
import logging

import pydantic
import pytest
import pytest_asyncio

from subpal_bridge.errors import (
    ConnectionLostError,
    DuplicateError,
    NotFoundError,
    QueueFullError,
    RemoteError,
    ValidationError,
)
from subpal_bridge.events import EventBus
from subpal_bridge.models.submission import ItemStatus, QueueItem, SubmissionKind
from subpal_bridge.queue import SUBMISSION_DROPPED, SubmissionQueueManager
from subpal_bridge.settings import BridgeSettings
from subpal_bridge.storage import MemoryQueueStore
from subpal_bridge.transport.base import ConnectionState


class FakeSender:
    """Stands in for the connection manager."""

    def __init__(self, connected: bool = True):
        self._connected = connected
        self._listeners = []
        self.sent = []
        self.failures = []
        self.gate = None
        self.after_send = None

    @property
    def connected(self):
        return self._connected

    def set_connected(self, value: bool):
        self._connected = value
        state = ConnectionState.CONNECTED if value else ConnectionState.DISCONNECTED
        for listener in list(self._listeners):
            listener(state)

    def on_state_change(self, listener):
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def send(self, message_type, payload=None, timeout=None):
        self.sent.append((message_type, payload))
        if self.after_send:
            self.after_send()
        if self.failures:
            raise self.failures.pop(0)
        if self.gate is not None:
            await self.gate.wait()
        return {"success": True, "data": {"n": len(self.sent)}}


def vote(ts=120, vote_type="upvote", video="abc"):
    return {"videoID": video, "timestamp": ts, "voteType": vote_type}


def translation(ts=10, text="Hola"):
    return {
        "videoId": "abc", "timestamp": ts, "original": "Hello", "translation": text,
        "languageCode": "es", "submissionReason": "typo",
    }


@pytest_asyncio.fixture
async def env(fast_settings):
    sender = FakeSender()
    store = MemoryQueueStore()
    bus = EventBus()
    manager = SubmissionQueueManager(sender, store, bus, fast_settings)
    await manager.initialize()
    yield sender, manager, store, bus
    await manager.aclose()


def queued_timestamps(manager, key="votes"):
    return [item["payload"]["timestamp"] for item in manager.get_all_pending()[key]]


class TestValidation:
    """Malformed input fails before anything is sent"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [
        {"timestamp": 1, "voteType": "upvote"},
        {"videoID": "", "timestamp": 1, "voteType": "upvote"},
        {"videoID": "abc", "timestamp": -1, "voteType": "upvote"},
        {"videoID": "abc", "timestamp": True, "voteType": "upvote"},
        {"videoID": "abc", "timestamp": "12", "voteType": "upvote"},
        {"videoID": "abc", "timestamp": 1, "voteType": "sideways"},
    ])
    async def test_bad_vote(self, env, bad):
        sender, manager, _, _ = env
        with pytest.raises(ValidationError) as exc:
            await manager.enqueue_vote(bad)
        assert exc.value.details["errors"]
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_translation_rules(self, env):
        sender, manager, _, _ = env
        with pytest.raises(ValidationError):
            await manager.enqueue_translation(translation(text="Hello"))
        with pytest.raises(ValidationError):
            await manager.enqueue_translation(translation(text="x" * 501))
        with pytest.raises(ValidationError):
            await manager.enqueue_translation({**translation(), "languageCode": "  "})
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_payload_sent_with_wire_names(self, env):
        sender, manager, _, _ = env
        await manager.enqueue_translation({**translation(), "original": "  Hello  "})
        message_type, payload = sender.sent[0]
        assert message_type == "SUBMIT_TRANSLATION"
        assert payload["original"] == "Hello"
        assert payload["languageCode"] == "es"


class TestDeduplication:
    """Same logical action inside the window"""

    @pytest.mark.asyncio
    async def test_duplicate_vote_rejected(self, env):
        sender, manager, _, _ = env
        await manager.enqueue_vote(vote())

        with pytest.raises(DuplicateError):
            await manager.enqueue_vote(vote())

        assert len(sender.sent) == 1
        assert manager.get_stats(SubmissionKind.VOTE).duplicates == 1

    @pytest.mark.asyncio
    async def test_duplicate_rejected_before_network(self, env):
        sender, manager, _, _ = env
        sender.set_connected(False)
        await manager.enqueue_vote(vote())

        with pytest.raises(DuplicateError):
            await manager.enqueue_vote(vote())
        assert sender.sent == []
        assert len(manager.get_all_pending()["votes"]) == 1

    @pytest.mark.asyncio
    async def test_different_vote_type_is_new(self, env):
        sender, manager, _, _ = env
        await manager.enqueue_vote(vote(vote_type="upvote"))
        await manager.enqueue_vote(vote(vote_type="downvote"))
        assert len(sender.sent) == 2

    @pytest.mark.asyncio
    async def test_window_expires(self, fast_settings):
        settings = fast_settings.model_copy(update={"vote_dedup_window": 0.03})
        sender = FakeSender()
        manager = SubmissionQueueManager(sender, settings=settings)

        await manager.enqueue_vote(vote())
        await asyncio.sleep(0.05)
        await manager.enqueue_vote(vote())

        assert len(sender.sent) == 2
        await manager.aclose()


class TestImmediateSubmission:
    """Idle lane and connected sender"""

    @pytest.mark.asyncio
    async def test_success_recorded(self, env):
        sender, manager, _, _ = env
        result = await manager.enqueue_vote(vote())

        assert result["success"] is True
        assert result["queued"] is False
        assert manager.get_status(result["itemId"])["status"] == "success"
        assert manager.get_user_vote_status("abc", 120) == {
            "hasVoted": True, "voteType": "upvote", "voteTime": manager.get_decision("vote", "abc", 120).decided_at,
        }

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_succeeds(self, env):
        sender, manager, _, _ = env
        sender.failures = [ConnectionLostError(), RemoteError("busy")]

        result = await manager.enqueue_vote(vote())

        assert result["success"] is True
        assert len(sender.sent) == 3

    @pytest.mark.asyncio
    async def test_final_error_propagates(self, env):
        sender, manager, _, _ = env
        sender.failures = [RemoteError("down")] * 3

        with pytest.raises(RemoteError, match="down"):
            await manager.enqueue_vote(vote())

        assert len(sender.sent) == 3
        stats = manager.get_stats("vote")
        assert stats.failures == 1 and stats.successes == 0
        assert manager.get_user_vote_status("abc", 120)["hasVoted"] is False

    @pytest.mark.asyncio
    async def test_unsuccessful_body_is_failure(self, env):
        sender, manager, _, _ = env

        async def refuse(message_type, payload=None, timeout=None):
            sender.sent.append((message_type, payload))
            return {"success": False}

        sender.send = refuse
        with pytest.raises(RemoteError):
            await manager.enqueue_vote(vote())

    @pytest.mark.asyncio
    async def test_queues_while_mid_submission(self, env, eventually):
        sender, manager, _, _ = env
        sender.gate = asyncio.Event()

        first = asyncio.ensure_future(manager.enqueue_vote(vote(ts=1)))
        await eventually(lambda: len(sender.sent) == 1)
        second = await manager.enqueue_vote(vote(ts=2))

        assert second["queued"] is True
        assert second["queuePosition"] == 1

        sender.gate.set()
        assert (await first)["queued"] is False
        await eventually(lambda: len(sender.sent) == 2 and not manager.get_all_pending()["votes"])
        assert manager.get_status(second["itemId"])["status"] == "success"


class TestOfflineQueue:
    """Queued acknowledgment, bounds and draining"""

    @pytest.mark.asyncio
    async def test_scenario_offline_then_reconnect(self, env, eventually):
        sender, manager, store, _ = env
        sender.set_connected(False)

        result = await manager.enqueue_vote({"videoID": "abc", "timestamp": 120, "voteType": "upvote"})

        assert result["queued"] is True
        assert result["queuePosition"] == 1
        assert len(store.data["voteQueue"]) == 1

        sender.set_connected(True)
        await eventually(lambda: not manager.get_all_pending()["votes"])

        assert manager.get_status(result["itemId"])["status"] == ItemStatus.SUCCESS.value
        assert store.data["voteQueue"] == []
        assert manager.get_stats("vote").queued == 1

    @pytest.mark.asyncio
    async def test_queue_bound(self, fast_settings):
        settings = fast_settings.model_copy(update={"vote_queue_size": 2})
        sender = FakeSender(connected=False)
        manager = SubmissionQueueManager(sender, settings=settings)

        await manager.enqueue_vote(vote(ts=1))
        await manager.enqueue_vote(vote(ts=2))
        with pytest.raises(QueueFullError):
            await manager.enqueue_vote(vote(ts=3))

        assert queued_timestamps(manager) == [1, 2]
        await manager.clear_queue("vote")
        # A rejected overflow does not count as seen.
        assert (await manager.enqueue_vote(vote(ts=3)))["queued"] is True
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_drain_is_fifo(self, env, eventually):
        sender, manager, _, _ = env
        sender.set_connected(False)
        for ts in (1, 2, 3, 4, 5, 6, 7):
            await manager.enqueue_vote(vote(ts=ts))

        sender.set_connected(True)
        await eventually(lambda: len(sender.sent) == 7)

        assert [p["timestamp"] for _, p in sender.sent] == [1, 2, 3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_failed_item_requeued_then_dropped(self, env, eventually):
        sender, manager, _, bus = env
        dropped = []
        bus.subscribe(SUBMISSION_DROPPED, lambda _t, data: dropped.append(data))
        sender.set_connected(False)
        result = await manager.enqueue_vote(vote())
        sender.failures = [RemoteError("nope")] * 3

        sender.set_connected(True)
        await eventually(lambda: dropped)

        assert len(sender.sent) == 3
        assert dropped[0]["itemId"] == result["itemId"]
        assert dropped[0]["attempts"] == 3
        assert manager.get_all_pending()["votes"] == []
        assert manager.get_status(result["itemId"])["status"] == "failed"
        assert manager.get_stats("vote").failures == 1

    @pytest.mark.asyncio
    async def test_retry_count_increments_once_per_failure(self, env):
        sender, manager, _, _ = env
        sender.set_connected(False)
        result = await manager.enqueue_vote(vote())
        sender.failures = [RemoteError("nope")]
        sender._connected = True

        assert await manager.process_next_in_queue("vote") is True

        status = manager.get_status(result["itemId"])
        assert status["retryCount"] == 1
        assert status["status"] == "pending"
        assert status["error"] == "nope"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_retryable(self, env, eventually):
        sender, manager, _, _ = env
        sender.set_connected(False)
        result = await manager.enqueue_vote(vote())
        sender.failures = [RuntimeError("bug")]

        sender.set_connected(True)
        await eventually(lambda: manager.get_status(result["itemId"])["status"] == "success")
        assert len(sender.sent) == 2

    @pytest.mark.asyncio
    async def test_batch_puts_back_on_disconnect(self, env):
        sender, manager, _, _ = env
        sender.set_connected(False)
        for ts in (1, 2, 3):
            await manager.enqueue_vote(vote(ts=ts))
        sender._connected = True
        sender.after_send = lambda: setattr(sender, "_connected", False)

        processed = await manager.process_batch("vote")

        assert processed == 1
        assert queued_timestamps(manager) == [2, 3]

    @pytest.mark.asyncio
    async def test_retry_controls(self, env, eventually):
        sender, manager, _, _ = env
        sender.set_connected(False)
        result = await manager.enqueue_vote(vote())
        sender.failures = [RemoteError("nope")] * 3
        sender.set_connected(True)
        await eventually(lambda: manager.get_status(result["itemId"])["status"] == "failed")

        retried = await manager.retry(result["itemId"], "vote")

        assert retried["success"] is True
        await eventually(lambda: manager.get_status(result["itemId"])["status"] == "success")
        with pytest.raises(NotFoundError):
            await manager.retry("missing")
        with pytest.raises(NotFoundError):
            manager.get_status("missing")


class TestHistory:
    """Bounded, most recent first"""

    @pytest.mark.asyncio
    async def test_capped_and_ordered(self, fast_settings):
        settings = fast_settings.model_copy(update={"history_limit": 3})
        manager = SubmissionQueueManager(FakeSender(), settings=settings)
        for ts in range(1, 6):
            await manager.enqueue_vote(vote(ts=ts))

        history = manager.get_history("vote")
        assert [e.timestamp for e in history] == [5, 4, 3]
        assert manager.get_decision("vote", "abc", 1) is None
        assert [e.timestamp for e in manager.get_history("vote", limit=1)] == [5]
        assert manager.clear_history("vote") == 3
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_kinds_are_separate(self, env):
        _, manager, _, _ = env
        await manager.enqueue_vote(vote())
        await manager.enqueue_translation(translation())

        assert len(manager.get_history("vote")) == 1
        assert manager.get_history("translation")[0].payload["translation"] == "Hola"


class TestPersistence:
    """Queues survive a restart"""

    @pytest.mark.asyncio
    async def test_restart_resumes_interrupted_items(self, fast_settings, eventually):
        store = MemoryQueueStore()
        await store.save(SubmissionKind.TRANSLATION, [
            QueueItem(kind=SubmissionKind.TRANSLATION, payload=translation(), status=ItemStatus.PROCESSING),
        ])
        sender = FakeSender(connected=False)
        manager = SubmissionQueueManager(sender, store, settings=fast_settings)

        await manager.initialize()

        pending = manager.get_all_pending()["translations"]
        assert len(pending) == 1 and pending[0]["status"] == "pending"

        sender.set_connected(True)
        await eventually(lambda: store.data["translationQueue"] == [])
        assert sender.sent[0][0] == "SUBMIT_TRANSLATION"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_restore_over_limit_warns(self, caplog):
        settings = BridgeSettings(vote_queue_size=2)
        store = MemoryQueueStore()
        await store.save(SubmissionKind.VOTE, [
            QueueItem(kind=SubmissionKind.VOTE, payload=vote(ts=n)) for n in range(5)
        ])
        manager = SubmissionQueueManager(FakeSender(connected=False), store, settings=settings)

        with caplog.at_level(logging.WARNING, logger="subpal_bridge.queue"):
            await manager.initialize()

        assert queued_timestamps(manager) == [0, 1]
        assert "Dropping 3 persisted vote item(s)" in caplog.text
        await manager.aclose()


class TestStats:
    """Read-only snapshots"""

    @pytest.mark.asyncio
    async def test_snapshot_is_frozen(self, env):
        _, manager, _, _ = env
        await manager.enqueue_vote(vote())
        stats = manager.get_stats("vote")

        assert stats.total == 1 and stats.successes == 1
        with pytest.raises(pydantic.ValidationError):
            stats.total = 0

    @pytest.mark.asyncio
    async def test_unknown_kind(self, env):
        _, manager, _, _ = env
        with pytest.raises(ValidationError):
            manager.get_stats("comment")
