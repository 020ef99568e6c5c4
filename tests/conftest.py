"""Shared fixtures: in-memory channel pairs and a polling helper."""

import asyncio
from typing import Any, Callable

import pytest
import pytest_asyncio

from subpal_bridge.settings import BridgeSettings
from subpal_bridge.transport.memory import MemoryChannel


async def _eventually(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return _eventually


@pytest_asyncio.fixture
async def link():
    """An opened (local, remote) memory channel pair."""
    local, remote = MemoryChannel.pair()
    await local.open()
    yield local, remote
    local.sever()


@pytest.fixture
def fast_settings():
    return BridgeSettings(
        retry_delay=0.001,
        batch_delay=0.001,
        drain_delay=0.0,
        reconnect_delay=0.02,
    )
