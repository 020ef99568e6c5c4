"""Correlation engine: matching, timeouts and exactly-once settlement."""

import asyncio

import pytest

from subpal_bridge import correlation
from subpal_bridge.correlation import CorrelationEngine
from subpal_bridge.errors import ConnectionLostError, DuplicateError, RemoteError, TimeoutError
from subpal_bridge.responder import Responder
from subpal_bridge.transport.envelope import build_response


async def echo(message_type, payload):
    return {"success": True, "type": message_type, "echo": payload}


class TestTimeoutTable:
    """Per-type timeouts"""

    @pytest.mark.asyncio
    async def test_defaults(self, link):
        engine = CorrelationEngine(link[0])
        assert engine.timeout_for("CHECK_SUBTITLE") == 30.0
        assert engine.timeout_for("SUBMIT_TRANSLATION") == 20.0
        assert engine.timeout_for("PROCESS_VOTE") == 15.0
        assert engine.timeout_for("CONFIG_GET") == 10.0

    @pytest.mark.asyncio
    async def test_custom_table(self, link):
        engine = CorrelationEngine(link[0], timeouts={"PING": 1.0}, default_timeout=2.0)
        assert engine.timeout_for("PING") == 1.0
        assert engine.timeout_for("PROCESS_VOTE") == 2.0


class TestRequestResponse:
    """Round trips over a memory channel"""

    @pytest.mark.asyncio
    async def test_resolves_with_body(self, link):
        local, remote = link
        Responder(remote, echo)
        engine = CorrelationEngine(local)

        body = await engine.send("CHECK_SUBTITLE", {"videoID": "abc"})

        assert body == {"success": True, "type": "CHECK_SUBTITLE", "echo": {"videoID": "abc"}}
        assert engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_error_body_rejects_with_typed_error(self, link):
        local, remote = link

        async def refuse(message_type, payload):
            raise DuplicateError("already voted", key="abc_120")

        Responder(remote, refuse)
        engine = CorrelationEngine(local)

        with pytest.raises(DuplicateError) as exc:
            await engine.send("VOTE_ENQUEUE", {})
        assert exc.value.key == "abc_120"

    @pytest.mark.asyncio
    async def test_plain_error_string(self, link):
        local, remote = link
        remote.on_message(lambda raw: asyncio.ensure_future(
            remote.send(build_response(raw["id"], {"success": False, "error": "Something failed"}))))
        engine = CorrelationEngine(local)

        with pytest.raises(RemoteError, match="Something failed"):
            await engine.send("PROCESS_VOTE", {})

    @pytest.mark.asyncio
    async def test_out_of_order_completion(self, link):
        local, remote = link
        received = []
        remote.on_message(received.append)
        engine = CorrelationEngine(local)

        futures = [await engine.submit("PING", {"n": n}) for n in range(3)]
        await asyncio.sleep(0.01)
        for raw in reversed(received):
            await remote.send(build_response(raw["id"], {"n": raw["payload"]["n"]}))

        results = await asyncio.gather(*futures)
        assert [r["n"] for r in results] == [0, 1, 2]


class TestExactlyOnce:
    """Each id settles once; late or stray responses are dropped"""

    @pytest.mark.asyncio
    async def test_duplicate_response_discarded(self, link, monkeypatch):
        local, remote = link
        monkeypatch.setattr(correlation, "new_message_id", lambda prefix="msg": "msg_42")
        engine = CorrelationEngine(local)
        results = []

        future = await engine.submit("PING")
        future.add_done_callback(lambda f: results.append(f.result()))
        await remote.send(build_response("msg_42", {"success": True, "n": 1}))
        await remote.send(build_response("msg_42", {"success": True, "n": 2}))

        assert (await future)["n"] == 1
        await asyncio.sleep(0.01)
        assert results == [{"success": True, "n": 1}]
        assert engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_unknown_id_ignored(self, link):
        local, remote = link
        engine = CorrelationEngine(local)
        await remote.send(build_response("msg_unknown", {"success": True}))
        await asyncio.sleep(0.01)
        assert engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_response_after_timeout_ignored(self, link):
        local, remote = link
        received = []
        remote.on_message(received.append)
        engine = CorrelationEngine(local)

        with pytest.raises(TimeoutError):
            await engine.send("PING", timeout=0.02)
        await remote.send(build_response(received[0]["id"], {"success": True}))
        await asyncio.sleep(0.01)
        assert engine.pending_count == 0


class TestTimeouts:
    """No answer in time"""

    @pytest.mark.asyncio
    async def test_timeout_names_message_type(self, link):
        engine = CorrelationEngine(link[0])

        with pytest.raises(TimeoutError) as exc:
            await engine.send("PROCESS_VOTE", {"videoID": "abc"}, timeout=0.05)

        assert "PROCESS_VOTE" in str(exc.value)
        assert exc.value.message_type == "PROCESS_VOTE"
        assert engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_table_timeout_used_when_no_override(self, link):
        engine = CorrelationEngine(link[0], timeouts={"PROCESS_VOTE": 0.03})
        with pytest.raises(TimeoutError, match="Message response timeout: PROCESS_VOTE"):
            await engine.send("PROCESS_VOTE")


class TestConnectionLoss:
    """Mass rejection and send failures"""

    @pytest.mark.asyncio
    async def test_fail_all_rejects_exactly_pending(self, link):
        engine = CorrelationEngine(link[0])
        futures = [await engine.submit("PING") for _ in range(3)]

        count = engine.fail_all(lambda p: ConnectionLostError(f"lost during {p.message_type}"))

        assert count == 3
        assert engine.pending_count == 0
        for future in futures:
            with pytest.raises(ConnectionLostError):
                await future
        assert engine.fail_all(lambda p: ConnectionLostError()) == 0

    @pytest.mark.asyncio
    async def test_send_on_severed_channel(self, link):
        local, _ = link
        engine = CorrelationEngine(local)
        local.sever()

        with pytest.raises(ConnectionLostError):
            await engine.send("PING")
        assert engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_close_fails_pending(self, link):
        engine = CorrelationEngine(link[0])
        future = await engine.submit("PING")
        engine.close()
        with pytest.raises(ConnectionLostError):
            await future


class TestCancellation:
    """A cancelled caller frees its entry"""

    @pytest.mark.asyncio
    async def test_cancel_removes_pending(self, link):
        engine = CorrelationEngine(link[0])
        task = asyncio.ensure_future(engine.send("PING"))
        await asyncio.sleep(0.01)
        assert engine.pending_count == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.pending_count == 0
