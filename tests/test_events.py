"""Tests for the event bus."""

from __future__ import annotations

import asyncio
import logging

from fieldsync.sync.events import EventBus


def test_delivery_follows_registration_order():
    bus: EventBus[str] = EventBus("test")
    seen = []
    bus.subscribe(lambda event: seen.append(("first", event)))
    bus.subscribe(lambda event: seen.append(("second", event)))

    bus.emit("ping")

    assert seen == [("first", "ping"), ("second", "ping")]


def test_failing_handler_does_not_block_others(caplog):
    bus: EventBus[str] = EventBus("test")
    seen = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe(broken)
    bus.subscribe(seen.append)

    with caplog.at_level(logging.ERROR, logger="fieldsync.sync.events"):
        bus.emit("ping")

    assert seen == ["ping"]
    assert "handler bug" in caplog.text


def test_unsubscribe_stops_delivery():
    bus: EventBus[str] = EventBus("test")
    seen = []
    unsubscribe = bus.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    bus.emit("ping")

    assert seen == []
    assert bus.subscriber_count == 0


async def test_async_handlers_are_scheduled():
    bus: EventBus[str] = EventBus("test")
    seen = []

    async def handler(event):
        await asyncio.sleep(0)
        seen.append(event)

    bus.subscribe(handler)
    bus.emit("ping")
    for _ in range(3):
        await asyncio.sleep(0)

    assert seen == ["ping"]


async def test_async_handler_failure_is_logged(caplog):
    bus: EventBus[str] = EventBus("test")

    async def handler(event):
        raise ValueError("async handler bug")

    bus.subscribe(handler)
    with caplog.at_level(logging.ERROR, logger="fieldsync.sync.events"):
        bus.emit("ping")
        for _ in range(3):
            await asyncio.sleep(0)

    assert "async handler bug" in caplog.text
