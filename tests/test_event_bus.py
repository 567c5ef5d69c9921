"""Tests for the async EventBus."""

import asyncio

from tern.events import ALL, LOOP_DETECTED, TOOL_APPROVED, TOOL_DENIED, Event, EventBus


class TestEventBus:
    async def test_drain_dispatches_to_handlers(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event.data["n"])

        bus.on(TOOL_DENIED, handler)
        await bus.emit(Event(TOOL_DENIED, {"n": 1}))
        await bus.emit(Event(TOOL_DENIED, {"n": 2}))
        assert bus.pending == 2
        await bus.drain()
        assert received == [1, 2]
        assert bus.pending == 0

    async def test_handler_errors_are_isolated(self):
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("boom")

        async def good(event):
            received.append(event.type)

        bus.on(LOOP_DETECTED, broken)
        bus.on(LOOP_DETECTED, good)
        await bus.emit(Event(LOOP_DETECTED))
        await bus.drain()
        assert received == [LOOP_DETECTED]

    async def test_persister_sees_every_event(self):
        bus = EventBus()
        persisted = []

        async def persist(event):
            persisted.append(event.type)

        bus.set_db_persister(persist)
        await bus.emit(Event("unhandled"))
        await bus.drain()
        assert persisted == ["unhandled"]

    async def test_persister_failure_does_not_block_handlers(self):
        bus = EventBus()
        received = []

        async def persist(event):
            raise OSError("disk full")

        async def handler(event):
            received.append(event)

        bus.set_db_persister(persist)
        bus.on(TOOL_DENIED, handler)
        await bus.emit(Event(TOOL_DENIED))
        await bus.drain()
        assert len(received) == 1

    async def test_full_queue_drops(self):
        bus = EventBus(max_queue=1)
        await bus.emit(Event("a"))
        await bus.emit(Event("b"))
        assert bus.pending == 1
        assert bus.dropped == 1

    async def test_wildcard_sees_every_type(self):
        bus = EventBus()
        seen = []

        async def audit(event):
            seen.append(event.type)

        bus.on(ALL, audit)
        await bus.emit(Event(TOOL_APPROVED))
        await bus.emit(Event(LOOP_DETECTED))
        await bus.drain()
        assert seen == [TOOL_APPROVED, LOOP_DETECTED]

    async def test_background_loop(self):
        bus = EventBus()
        seen = asyncio.Event()

        async def handler(event):
            seen.set()

        bus.on(TOOL_DENIED, handler)
        await bus.start()
        await bus.emit(Event(TOOL_DENIED))
        assert bus.running
        await asyncio.wait_for(seen.wait(), timeout=2)
        await bus.stop()
        assert not bus.running
