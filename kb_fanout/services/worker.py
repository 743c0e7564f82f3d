"""
Event bus and worker.

emit() records an event and enqueues it without waiting for processing.
The worker hands each event to every applicable processor concurrently.
Events that share an entity key run strictly in emission order; events for
different entities run in parallel up to the concurrency limit.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_fanout.core.database import session_scope
from kb_fanout.schemas.events import EventIn, EventName, EventRecord
from kb_fanout.services.event_log import record_event

log = structlog.get_logger()

Processor = Callable[[EventRecord], Awaitable[object]]


class EventBus:
    """The single entry point mutation call sites use to hand off events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._queue: asyncio.Queue[EventRecord] = asyncio.Queue()

    @property
    def queue(self) -> asyncio.Queue[EventRecord]:
        return self._queue

    async def emit(self, event_in: EventIn) -> EventRecord:
        """Persist the event, then enqueue it for asynchronous processing."""
        async with session_scope(self._session_factory) as session:
            record = await record_event(session, event_in)
        self._queue.put_nowait(record)
        return record

    def enqueue(self, record: EventRecord) -> None:
        """Enqueue an event the caller already recorded and committed."""
        self._queue.put_nowait(record)


@dataclass(frozen=True)
class _Registration:
    name: str
    processor: Processor
    events: Optional[frozenset[EventName]]

    def applies_to(self, event: EventRecord) -> bool:
        return self.events is None or event.name in self.events


class EventWorker:
    """Consumes the bus queue and runs processors."""

    def __init__(self, bus: EventBus, concurrency: int = 16) -> None:
        self._bus = bus
        self._registrations: list[_Registration] = []
        self._semaphore = asyncio.Semaphore(concurrency)
        self._max_pending = concurrency * 4
        # entity key -> last scheduled task for that key
        self._tails: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None

    def register(
        self,
        name: str,
        processor: Processor,
        events: Optional[frozenset[EventName]] = None,
    ) -> None:
        self._registrations.append(_Registration(name, processor, events))

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._runner is None:
            self._runner = asyncio.create_task(self._run())
            log.info("worker.started", processors=[r.name for r in self._registrations])

    async def stop(self) -> None:
        """Drain everything already emitted, then stop consuming."""
        await self.drain()
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        log.info("worker.stopped")

    async def drain(self) -> None:
        await self._bus.queue.join()

    async def _run(self) -> None:
        queue = self._bus.queue
        while True:
            event = await queue.get()
            if len(self._inflight) >= self._max_pending:
                await asyncio.wait(self._inflight, return_when=asyncio.FIRST_COMPLETED)
            self._schedule(event)

    def _schedule(self, event: EventRecord) -> None:
        key = event.entity_key
        previous = self._tails.get(key)
        task = asyncio.create_task(self._process_after(previous, event))
        self._tails[key] = task
        self._inflight.add(task)
        task.add_done_callback(lambda t, k=key: self._finished(k, t))

    def _finished(self, key: str, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if self._tails.get(key) is task:
            del self._tails[key]
        self._bus.queue.task_done()

    async def _process_after(self, previous: Optional[asyncio.Task], event: EventRecord) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        async with self._semaphore:
            await self.process(event)

    # --- Processing ---

    async def process(self, event: EventRecord) -> None:
        """Run every applicable processor. One failing never stops the others."""
        registrations = [r for r in self._registrations if r.applies_to(event)]
        if not registrations:
            return

        results = await asyncio.gather(
            *(r.processor(event) for r in registrations),
            return_exceptions=True,
        )
        for registration, result in zip(registrations, results):
            if isinstance(result, BaseException):
                log.error(
                    "worker.processor_failed",
                    processor=registration.name,
                    event_name=event.name.value,
                    event_id=str(event.id),
                    error=repr(result),
                )
