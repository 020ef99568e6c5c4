"""Page-context channel: availability, injection and addressing."""

import asyncio

import pytest

from subpal_bridge.correlation import CorrelationEngine
from subpal_bridge.errors import ConnectionLostError, TimeoutError
from subpal_bridge.responder import Responder
from subpal_bridge.transport.base import ConnectionState
from subpal_bridge.transport.page import (
    MEDIATOR,
    PAGE_SCRIPT,
    REQUEST_INJECTION_FRAME,
    BroadcastBus,
    PageChannel,
)


def make_pair(bus, **kwargs):
    mediator = PageChannel(bus, local=MEDIATOR, remote=PAGE_SCRIPT, **kwargs)
    page = PageChannel(bus, local=PAGE_SCRIPT, remote=MEDIATOR, **kwargs)
    return mediator, page


class TestAvailability:
    """The page script may not exist yet"""

    @pytest.mark.asyncio
    async def test_wait_times_out(self):
        mediator, _ = make_pair(BroadcastBus(), wait_timeout=0.05, poll_interval=0.01)
        assert not mediator.is_available()

        with pytest.raises(TimeoutError, match="Page script load timeout"):
            await mediator.wait_until_available()

    @pytest.mark.asyncio
    async def test_short_timeout_not_rounded_up_to_poll_interval(self):
        mediator, _ = make_pair(BroadcastBus(), poll_interval=0.5)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(TimeoutError):
            await mediator.wait_until_available(0.05)

        assert loop.time() - started < 0.3

    @pytest.mark.asyncio
    async def test_announce_makes_available(self):
        mediator, page = make_pair(BroadcastBus(), poll_interval=0.01)
        waiter = asyncio.ensure_future(mediator.wait_until_available(1.0))

        page.announce()

        assert await waiter is True
        assert mediator.is_available()
        assert mediator.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_retire_makes_unavailable(self):
        mediator, page = make_pair(BroadcastBus(), poll_interval=0.01)
        page.announce()
        await mediator.wait_until_available(1.0)

        page.retire()
        await asyncio.sleep(0.01)

        assert not mediator.is_available()
        assert mediator.state is ConnectionState.DISCONNECTED
        with pytest.raises(ConnectionLostError):
            await mediator.send({"id": "x", "type": "PING"})


class TestInjection:
    """Injection is requested through the bus and performed elsewhere"""

    @pytest.mark.asyncio
    async def test_request_injection_waits_for_announce(self):
        bus = BroadcastBus()
        _, page = make_pair(bus, poll_interval=0.01)
        requests = []

        def injector(frame):
            if frame.get("type") == REQUEST_INJECTION_FRAME:
                requests.append(frame)
                page.announce()

        bus.add_listener(injector)
        client = PageChannel(bus, local="subpal-ui", remote=PAGE_SCRIPT, poll_interval=0.01)

        await client.request_injection(1.0)

        assert client.is_available()
        assert len(requests) == 1
        assert requests[0]["source"] == "subpal-ui"

    @pytest.mark.asyncio
    async def test_no_request_when_already_available(self):
        bus = BroadcastBus()
        mediator, page = make_pair(bus, poll_interval=0.01)
        frames = []
        bus.add_listener(frames.append)
        page.announce()
        await mediator.wait_until_available(1.0)

        await mediator.request_injection(1.0)

        assert all(f.get("type") != REQUEST_INJECTION_FRAME for f in frames)


class TestAddressing:
    """Only frames addressed to the local end from its peer are surfaced"""

    @pytest.mark.asyncio
    async def test_frames_reach_only_target(self):
        bus = BroadcastBus()
        mediator, page = make_pair(bus)
        bystander = PageChannel(bus, local="other", remote=MEDIATOR)
        page.announce()
        await asyncio.sleep(0.01)
        got_page, got_other = [], []
        page.on_message(got_page.append)
        bystander.on_message(got_other.append)

        await mediator.send({"id": "m1", "type": "PING", "payload": None})
        await asyncio.sleep(0.01)

        assert got_page == [{"id": "m1", "type": "PING", "payload": None}]
        assert got_other == []

    @pytest.mark.asyncio
    async def test_correlated_round_trip(self):
        bus = BroadcastBus()
        mediator, page = make_pair(bus)

        async def dispatch(message_type, payload):
            return {"success": True, "value": payload["key"].upper()}

        Responder(mediator, dispatch)
        engine = CorrelationEngine(page, id_prefix="page")
        page.announce()
        await asyncio.sleep(0.01)

        assert await engine.send("CONFIG_GET", {"key": "lang"}) == {"success": True, "value": "LANG"}
