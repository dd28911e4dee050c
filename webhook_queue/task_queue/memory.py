"""
In-Memory Queue Backend

Simple in-process queue for tests and local development.
Uses asyncio primitives; nothing is persisted and nothing is visible
outside the current process.
"""

import asyncio
import datetime as dt
import heapq
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from webhook_queue.task_queue.base import (
    BackendDelivery,
    QueueConsumerBackend,
    ScheduledQueueProducer,
)


@dataclass(order=True)
class _Envelope:
    visible_at: dt.datetime
    seq: int
    payload: bytes = field(compare=False)


class MemoryQueueBackend:
    """
    Shared state behind a memory producer/consumer pair.

    Delayed payloads wait in a heap ordered by visibility time and are
    promoted to the ready queue once due. Received payloads stay in the
    in-flight table until acked (dropped) or nacked (re-queued).

    Suitable for:
    - Testing
    - Single-process development setups

    Not suitable for:
    - Multi-process deployments
    - Anything that must survive a restart
    """

    def __init__(self):
        """Initialize in-memory queue."""
        self._ready: deque[_Envelope] = deque()
        self._scheduled: list[_Envelope] = []
        self._in_flight: dict[int, _Envelope] = {}
        self._seq = itertools.count()
        self._condition = asyncio.Condition()

    @classmethod
    def build_pair(cls) -> tuple["MemoryQueueProducer", "MemoryQueueConsumer"]:
        """Create a producer and a consumer sharing one in-memory queue."""
        backend = cls()
        return MemoryQueueProducer(backend), MemoryQueueConsumer(backend)

    @property
    def pending(self) -> int:
        """Payloads waiting to be received, delayed ones included."""
        return len(self._ready) + len(self._scheduled)

    @property
    def in_flight(self) -> int:
        """Payloads received but not yet acked or nacked."""
        return len(self._in_flight)

    async def put(self, payload: bytes, delay: Optional[dt.timedelta] = None) -> None:
        now = dt.datetime.now(dt.UTC)
        async with self._condition:
            if delay and delay > dt.timedelta(0):
                envelope = _Envelope(now + delay, next(self._seq), payload)
                heapq.heappush(self._scheduled, envelope)
            else:
                self._ready.append(_Envelope(now, next(self._seq), payload))
            self._condition.notify_all()

    async def take(self, max_messages: int, deadline: float) -> list["MemoryDelivery"]:
        loop = asyncio.get_running_loop()
        expires = loop.time() + deadline

        async with self._condition:
            while True:
                self._promote_due()
                if self._ready:
                    break

                remaining = expires - loop.time()
                if remaining <= 0:
                    return []

                # Wake up for the next scheduled payload even if nobody notifies
                if self._scheduled:
                    due_in = (
                        self._scheduled[0].visible_at - dt.datetime.now(dt.UTC)
                    ).total_seconds()
                    remaining = min(remaining, max(due_in, 0.0))

                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass

            batch = []
            while self._ready and len(batch) < max_messages:
                envelope = self._ready.popleft()
                self._in_flight[envelope.seq] = envelope
                batch.append(MemoryDelivery(self, envelope))
            return batch

    async def complete(self, envelope: _Envelope) -> None:
        async with self._condition:
            self._in_flight.pop(envelope.seq, None)

    async def requeue(self, envelope: _Envelope) -> None:
        async with self._condition:
            if self._in_flight.pop(envelope.seq, None) is None:
                return
            self._ready.append(
                _Envelope(dt.datetime.now(dt.UTC), next(self._seq), envelope.payload)
            )
            self._condition.notify_all()

    def _promote_due(self) -> None:
        now = dt.datetime.now(dt.UTC)
        while self._scheduled and self._scheduled[0].visible_at <= now:
            self._ready.append(heapq.heappop(self._scheduled))


class MemoryDelivery(BackendDelivery):
    """Handle to one in-flight payload of a MemoryQueueBackend."""

    def __init__(self, backend: MemoryQueueBackend, envelope: _Envelope):
        self._backend = backend
        self._envelope = envelope
        self._finalized = False

    @property
    def payload(self) -> Optional[bytes]:
        return self._envelope.payload

    @property
    def visible_at(self) -> dt.datetime:
        return self._envelope.visible_at

    async def ack(self) -> None:
        self._consume()
        await self._backend.complete(self._envelope)

    async def nack(self) -> None:
        self._consume()
        await self._backend.requeue(self._envelope)

    def _consume(self) -> None:
        if self._finalized:
            raise RuntimeError("memory delivery already acked or nacked")
        self._finalized = True


class MemoryQueueProducer(ScheduledQueueProducer):

    def __init__(self, backend: MemoryQueueBackend):
        self.backend = backend

    async def send(self, payload: bytes) -> None:
        await self.backend.put(payload)

    async def send_scheduled(self, payload: bytes, delay: dt.timedelta) -> None:
        await self.backend.put(payload, delay)


class MemoryQueueConsumer(QueueConsumerBackend):

    def __init__(self, backend: MemoryQueueBackend):
        self.backend = backend

    async def receive_all(
        self, max_messages: int, deadline: float
    ) -> list[BackendDelivery]:
        return await self.backend.take(max_messages, deadline)
