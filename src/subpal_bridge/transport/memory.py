"""
In-process channel pair. Delivery happens on a later loop iteration and every
message is copied, so the two ends share no state, just like two sandboxes.
"""

import asyncio
import copy
from typing import Any

from subpal_bridge.errors import ConnectionLostError
from subpal_bridge.transport.base import ConnectionState, TransportChannel


class _Link:
    __slots__ = ("up", "accepting", "ends")

    def __init__(self) -> None:
        self.up = False
        self.accepting = True
        self.ends: list["MemoryChannel"] = []


class MemoryChannel(TransportChannel):
    def __init__(self, link: _Link, name: str):
        super().__init__()
        self._link = link
        self.name = name
        link.ends.append(self)

    @classmethod
    def pair(cls, names: tuple[str, str] = ("local", "remote")) -> tuple["MemoryChannel", "MemoryChannel"]:
        link = _Link()
        return cls(link, names[0]), cls(link, names[1])

    @property
    def peer(self) -> "MemoryChannel":
        return next(end for end in self._link.ends if end is not self)

    async def open(self) -> None:
        if not self._link.accepting:
            raise ConnectionLostError(f"{self.peer.name} is not accepting connections")
        self._link.up = True
        for end in self._link.ends:
            end._set_state(ConnectionState.CONNECTED)

    async def close(self) -> None:
        self.sever()

    def sever(self) -> None:
        """Tear the link down, as when the remote context is reloaded."""
        self._link.up = False
        for end in self._link.ends:
            end._set_state(ConnectionState.DISCONNECTED)

    def refuse(self, refusing: bool = True) -> None:
        """Make subsequent open() calls fail until called again with False."""
        self._link.accepting = not refusing

    async def send(self, message: dict[str, Any]) -> None:
        if not self._link.up:
            raise ConnectionLostError(f"Channel {self.name} is not connected")
        asyncio.get_running_loop().call_soon(self.peer._receive, copy.deepcopy(message))

    def _receive(self, message: dict[str, Any]) -> None:
        # In-flight messages die with the link.
        if self._link.up:
            self._deliver(message)
