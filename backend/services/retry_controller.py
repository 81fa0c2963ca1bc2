"""Delayed-retry handling for failed deliveries.

A failed delivery is acked and a copy is scheduled for republish with
``retry_count + 1`` after the next delay in the schedule. Once the retry
budget is spent the delivery is rejected, which dead-letters it. Scheduled
republishes live in an in-process delay queue driven by a clock, so tests
can advance a virtual clock instead of sleeping. On shutdown ``drain``
republishes whatever is still waiting.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence

from services.broker import Delivery, MessageBroker
from utils.logger import get_logger

logger = get_logger("retry_controller")

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (1.0, 5.0, 30.0)
DEFAULT_MAX_RETRIES = 3


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class VirtualClock:
    """Manually advanced clock; ``sleep`` yields control without waiting."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += float(seconds)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(0)


@dataclass(order=True)
class ScheduledRetry:
    due_at: float
    seq: int
    routing_key: str = field(compare=False)
    body: Any = field(compare=False)
    retry_count: int = field(compare=False)
    message_id: Optional[str] = field(compare=False, default=None)


class DelayQueue:
    """Min-heap of republishes ordered by due time (FIFO among equal due times)."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self._heap: list[ScheduledRetry] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def schedule(
        self,
        delay: float,
        routing_key: str,
        body: Any,
        retry_count: int,
        message_id: Optional[str] = None,
    ) -> ScheduledRetry:
        item = ScheduledRetry(
            due_at=self.clock.now() + max(0.0, float(delay)),
            seq=next(self._seq),
            routing_key=routing_key,
            body=body,
            retry_count=retry_count,
            message_id=message_id,
        )
        heapq.heappush(self._heap, item)
        return item

    def pop_due(self, now: Optional[float] = None) -> list[ScheduledRetry]:
        now = self.clock.now() if now is None else now
        due: list[ScheduledRetry] = []
        while self._heap and self._heap[0].due_at <= now:
            due.append(heapq.heappop(self._heap))
        return due

    def next_due_in(self, now: Optional[float] = None) -> Optional[float]:
        if not self._heap:
            return None
        now = self.clock.now() if now is None else now
        return max(0.0, self._heap[0].due_at - now)

    def pending(self) -> list[ScheduledRetry]:
        return sorted(self._heap)


class RetryController:
    def __init__(
        self,
        broker: MessageBroker,
        *,
        max_retries: int | Callable[[], int] = DEFAULT_MAX_RETRIES,
        delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        clock: Optional[Clock] = None,
        idle_poll_seconds: float = 1.0,
    ):
        if not delays:
            raise ValueError("delays must not be empty")
        self.broker = broker
        self._max_retries = max_retries
        self.delays = tuple(float(d) for d in delays)
        self.clock = clock or MonotonicClock()
        self.delay_queue = DelayQueue(self.clock)
        self.idle_poll_seconds = idle_poll_seconds
        self._stopped = asyncio.Event()

    @property
    def max_retries(self) -> int:
        value = self._max_retries() if callable(self._max_retries) else self._max_retries
        return max(0, int(value))

    def delay_for(self, retry_count: int) -> float:
        return self.delays[min(retry_count, len(self.delays) - 1)]

    async def handle_failure(self, delivery: Delivery, error: BaseException) -> str:
        """Schedule a retry or dead-letter the delivery. Returns ``"retry"`` or ``"dead_letter"``."""
        retry_count = delivery.retry_count
        if retry_count < self.max_retries:
            delay = self.delay_for(retry_count)
            self.delay_queue.schedule(
                delay,
                delivery.routing_key,
                delivery.body,
                retry_count + 1,
                message_id=delivery.message_id,
            )
            await self.broker.ack(delivery)
            logger.info(
                "Scheduling retry",
                queue=delivery.queue,
                delay=delay,
                next_retry=retry_count + 1,
                error=str(error),
            )
            return "retry"

        logger.warning(
            "Max retries exceeded, moving to DLQ",
            queue=delivery.queue,
            retry_count=retry_count,
            error=str(error),
        )
        await self.broker.reject(delivery, reason="max_retries_exceeded")
        return "dead_letter"

    async def flush_due(self) -> int:
        """Republish every retry whose delay has elapsed."""
        published = 0
        for item in self.delay_queue.pop_due():
            try:
                await self.broker.publish(
                    item.routing_key,
                    item.body,
                    retry_count=item.retry_count,
                    message_id=item.message_id,
                )
                published += 1
            except Exception as exc:
                # Put it back so a broker hiccup does not lose the retry.
                self.delay_queue.schedule(
                    self.delay_for(0),
                    item.routing_key,
                    item.body,
                    item.retry_count,
                    message_id=item.message_id,
                )
                logger.error("Failed to republish retry", routing_key=item.routing_key, error=str(exc))
        return published

    async def drain(self) -> int:
        """Republish every pending retry now, keeping its retry count.

        Called on shutdown before the broker closes: the originals were
        already acked, so anything left in the delay queue would be lost.
        """
        items = self.delay_queue.pop_due(float("inf"))
        published = 0
        for item in items:
            try:
                await self.broker.publish(
                    item.routing_key,
                    item.body,
                    retry_count=item.retry_count,
                    message_id=item.message_id,
                )
                published += 1
            except Exception as exc:
                logger.error(
                    "Failed to republish pending retry on shutdown",
                    routing_key=item.routing_key,
                    message_id=item.message_id,
                    error=str(exc),
                )
        if items:
            logger.info("Flushed pending retries", published=published, pending=len(items))
        return published

    async def run(self) -> None:
        """Background timer loop; never blocks the consumer."""
        while not self._stopped.is_set():
            wait = self.delay_queue.next_due_in()
            await self.clock.sleep(self.idle_poll_seconds if wait is None else min(wait, self.idle_poll_seconds))
            await self.flush_due()

    def stop(self) -> None:
        self._stopped.set()
