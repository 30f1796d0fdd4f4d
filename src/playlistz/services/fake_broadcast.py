"""In-memory change-notice channel for deterministic testing.

Channels attached to the same `LocalBroadcastBus` behave like separate
processes sharing an origin: a posted notice reaches every listener on every
channel of the bus on a later loop iteration, never inline.
"""

from __future__ import annotations

import asyncio

from playlistz.events import ChangeNotice
from playlistz.services.broadcast import (
    ListenerHandle,
    NoticeListener,
    dispatch_notice,
)


class LocalBroadcastBus:
    """Shared medium connecting several `LocalBroadcastChannel` instances."""

    def __init__(self) -> None:
        self.channels: list[LocalBroadcastChannel] = []
        self.posted: list[ChangeNotice] = []

    def channel(self) -> LocalBroadcastChannel:
        channel = LocalBroadcastChannel(self)
        self.channels.append(channel)
        return channel

    def deliver(self, notice: ChangeNotice) -> None:
        for channel in list(self.channels):
            channel.receive(notice)

    async def flush(self) -> None:
        """Yield until scheduled deliveries have run."""
        await asyncio.sleep(0)
        await asyncio.sleep(0)


class LocalBroadcastChannel:
    """`BroadcastChannel` implementation over a `LocalBroadcastBus`."""

    def __init__(self, bus: LocalBroadcastBus) -> None:
        self._bus = bus
        self._handles: list[ListenerHandle] = []
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def aclose(self) -> None:
        self.started = False
        self._handles.clear()
        if self in self._bus.channels:
            self._bus.channels.remove(self)

    def post(self, notice: ChangeNotice) -> None:
        self._bus.posted.append(notice)
        asyncio.get_running_loop().call_soon(self._bus.deliver, notice)

    def listen(self, listener: NoticeListener) -> ListenerHandle:
        handle = ListenerHandle(listener, self._handles.remove)
        self._handles.append(handle)
        return handle

    def receive(self, notice: ChangeNotice) -> None:
        dispatch_notice(list(self._handles), notice)

    @property
    def listener_count(self) -> int:
        return len(self._handles)
