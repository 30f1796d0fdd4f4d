"""Tests for the in-memory change-notice channel."""

from __future__ import annotations

import asyncio

from playlistz.events import ChangeNotice
from playlistz.services.fake_broadcast import LocalBroadcastBus


def _run(coro):
    return asyncio.run(coro)


def test_delivery_is_deferred_to_a_later_loop_iteration() -> None:
    bus = LocalBroadcastBus()
    received: list[str] = []

    async def _exercise() -> tuple[list[str], list[str]]:
        sender = bus.channel()
        receiver = bus.channel()
        await sender.start()
        await receiver.start()
        receiver.listen(lambda notice: received.append(notice.key))
        sender.post(ChangeNotice("songs", "s1", "a"))
        inline = list(received)
        await bus.flush()
        return inline, list(received)

    inline, delivered = _run(_exercise())
    assert inline == []
    assert delivered == ["s1"]
    assert [notice.key for notice in bus.posted] == ["s1"]


def test_closed_channel_stops_receiving() -> None:
    bus = LocalBroadcastBus()
    received: list[str] = []

    async def _exercise() -> int:
        sender = bus.channel()
        receiver = bus.channel()
        receiver.listen(lambda notice: received.append(notice.key))
        await receiver.aclose()
        sender.post(ChangeNotice("songs", "s1", "a"))
        await bus.flush()
        return receiver.listener_count

    assert _run(_exercise()) == 0
    assert received == []
