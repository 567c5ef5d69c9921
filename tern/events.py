"""Audit events for approvals, loop vetoes, failed turns and plan transitions.

Emitters never wait on subscribers: emit() only enqueues. A worker task
started with start() delivers events in order; without it (tests, shutdown)
drain() delivers whatever is queued in the caller's task. Each event goes
to the persister first, then to every handler subscribed to its type or to
ALL. A failing persister or handler is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

TOOL_APPROVED = "tool_approved"
TOOL_DENIED = "tool_denied"
TOOL_AUTO_APPROVED = "tool_auto_approved"
LOOP_DETECTED = "loop_detected"
TURN_FAILED = "turn_failed"
PLAN_STATUS_CHANGED = "plan_status_changed"
PLAN_TASK_STATUS_CHANGED = "plan_task_status_changed"

AUDIT_EVENTS = (
    TOOL_APPROVED,
    TOOL_DENIED,
    TOOL_AUTO_APPROVED,
    LOOP_DETECTED,
    TURN_FAILED,
    PLAN_STATUS_CHANGED,
    PLAN_TASK_STATUS_CHANGED,
)

ALL = "*"  # subscribe to every event type


@dataclass
class Event:
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self._persist: EventHandler | None = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe `handler` to `event_type` (or ALL)."""
        if event_type != ALL and event_type not in AUDIT_EVENTS:
            logger.debug("Subscribing to non-audit event type '%s'", event_type)
        self._subscribers[event_type].append(handler)

    def set_db_persister(self, persister: EventHandler) -> None:
        self._persist = persister

    async def emit(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event queue full (%d), dropped %s", self._queue.maxsize, event.type)

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._work(), name="tern-events")
            logger.info("Event bus started")

    async def stop(self) -> None:
        """Cancel the worker, then deliver what is still queued."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        await self.drain()
        if self.dropped:
            logger.warning("Event bus stopped; %d event(s) were dropped", self.dropped)
        else:
            logger.info("Event bus stopped")

    async def drain(self) -> None:
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._deliver(event)

    async def _work(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Event delivery failed for %s", event.type)

    async def _deliver(self, event: Event) -> None:
        if self._persist is not None:
            try:
                await self._persist(event)
            except Exception as e:
                logger.warning("Could not persist %s event: %s", event.type, e)

        handlers = self._subscribers.get(event.type, []) + self._subscribers.get(ALL, [])
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))

    @staticmethod
    async def _call(handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Event handler %s failed on %s",
                getattr(handler, "__qualname__", handler),
                event.type,
            )
