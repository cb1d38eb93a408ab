"""Request Manager: bounded priority queue for deferred requests.

Requests deferred by admission control wait here until the drain loop
hands them, one at a time, to the processor installed by the Dispatcher:
  - Higher priority first, FIFO among equal priorities
  - Bounded: queue_request() raises QueueFullError at capacity
  - Each queued request carries an asyncio.Future resolved with the
    processor's result (or rejected with its error / an abort)
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from llm_dispatch.core.events import EventSink, NullEventSink
from llm_dispatch.gateway.errors import QueueFullError, RequestAbortedError
from llm_dispatch.gateway.types import QueuedRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUE_SIZE = 100
PROCESSING_SAMPLE_SIZE = 100  # Rolling window for average processing time

Processor = Callable[[QueuedRequest], Awaitable[Any]]


@dataclass(order=True)
class _PriorityItem:
    """Wrapper for heap queue ordering."""

    sort_key: int  # Negated priority: heapq pops the smallest
    sequence: int  # Tie-breaker for FIFO within same priority
    queued: QueuedRequest = field(compare=False)


class RequestManager:
    """Priority queue with a serialized drain loop.

    Usage:
        manager = RequestManager(events=bus, processor=run_request)

        future = manager.queue_request(QueuedRequest(request=req, provider="openai"))
        await manager.process_queue()
        result = await future
    """

    def __init__(
        self,
        events: EventSink | None = None,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        processor: Processor | None = None,
        clock: Callable[[], float] | None = None,
    ):
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self._events = events or NullEventSink()
        self._clock = clock or time.time
        self.max_queue_size = max_queue_size
        self._processor = processor
        self._heap: list[_PriorityItem] = []
        self._sequence = 0
        self._processing = False
        self._total_processed = 0
        self._total_failed = 0
        self._processing_times: deque[float] = deque(maxlen=PROCESSING_SAMPLE_SIZE)

    def __len__(self) -> int:
        return len(self._heap)

    def set_processor(self, processor: Processor) -> None:
        self._processor = processor

    @property
    def processing(self) -> bool:
        return self._processing

    def queue_request(self, queued: QueuedRequest) -> asyncio.Future:
        """Enqueue a request and return the future resolved when it is processed.

        Raises QueueFullError immediately, without touching the queue, when
        it is at capacity. Must be called from a running event loop.
        """
        now = self._clock()
        if len(self._heap) >= self.max_queue_size:
            self._events.publish(
                "request.queue_full",
                {
                    "request_id": queued.id,
                    "queue_size": len(self._heap),
                    "max_size": self.max_queue_size,
                    "timestamp": now,
                },
            )
            logger.warning("Request queue full (%d/%d), rejecting %s", len(self._heap), self.max_queue_size, queued.id)
            raise QueueFullError(len(self._heap), self.max_queue_size)

        if queued.future is None:
            queued.future = asyncio.get_running_loop().create_future()
        if not queued.enqueued_at:
            queued.enqueued_at = now

        self._sequence += 1
        heapq.heappush(self._heap, _PriorityItem(-int(queued.priority), self._sequence, queued))

        self._events.publish(
            "request.queued",
            {
                "request_id": queued.id,
                "provider": queued.provider,
                "priority": int(queued.priority),
                "queue_size": len(self._heap),
                "timestamp": now,
            },
        )
        logger.debug("Queued request %s for %s (priority=%d)", queued.id, queued.provider, int(queued.priority))
        return queued.future

    async def process_queue(self) -> int:
        """Drain the queue one request at a time. Returns the number processed.

        A call made while a drain is already running returns 0 immediately.
        """
        if self._processing or not self._heap:
            return 0
        if self._processor is None:
            raise RuntimeError("RequestManager has no processor configured")

        self._processing = True
        processed = 0
        try:
            while self._heap:
                queued = heapq.heappop(self._heap).queued
                future = queued.future
                if future is not None and future.done():
                    # Caller stopped waiting (future cancelled) while queued
                    continue

                started = self._clock()
                self._events.publish(
                    "request.dequeued",
                    {
                        "request_id": queued.id,
                        "provider": queued.provider,
                        "wait_time_ms": (started - queued.enqueued_at) * 1000,
                        "queue_size": len(self._heap),
                        "timestamp": started,
                    },
                )
                try:
                    result = await self._processor(queued)
                except asyncio.CancelledError:
                    if future is not None and not future.done():
                        future.cancel()
                    raise
                except Exception as e:
                    self._total_failed += 1
                    if future is not None and not future.done():
                        future.set_exception(e)
                    self._events.publish(
                        "request.failed",
                        {
                            "request_id": queued.id,
                            "provider": queued.provider,
                            "error": str(e),
                            "queue_size": len(self._heap),
                            "timestamp": self._clock(),
                        },
                    )
                    logger.debug("Queued request %s failed: %s", queued.id, e)
                    continue

                processing_ms = (self._clock() - started) * 1000
                self._processing_times.append(processing_ms)
                self._total_processed += 1
                processed += 1
                if future is not None and not future.done():
                    future.set_result(result)
                self._events.publish(
                    "request.processed",
                    {
                        "request_id": queued.id,
                        "provider": queued.provider,
                        "processing_time_ms": processing_ms,
                        "queue_size": len(self._heap),
                        "timestamp": self._clock(),
                    },
                )
        finally:
            self._processing = False

        if processed:
            logger.info("Drained %d queued requests", processed)
        return processed

    def abort_request(self, request_id: str) -> bool:
        """Remove a still-queued request and reject its future. Returns True if found."""
        for index, item in enumerate(self._heap):
            if item.queued.id == request_id:
                break
        else:
            return False

        self._heap.pop(index)
        heapq.heapify(self._heap)
        self._reject(item.queued, "Request aborted")
        self._events.publish(
            "request.aborted",
            {"request_id": request_id, "queue_size": len(self._heap), "timestamp": self._clock()},
        )
        return True

    def abort_all_requests(self) -> int:
        """Reject every queued request. Requests already dequeued are unaffected."""
        items, self._heap = self._heap, []
        for item in items:
            self._reject(item.queued, "All requests aborted")
        self._events.publish("request.all_aborted", {"aborted_count": len(items), "timestamp": self._clock()})
        if items:
            logger.info("Aborted %d queued requests", len(items))
        return len(items)

    def pending(self) -> list[QueuedRequest]:
        """Snapshot of queued requests in service order."""
        return [item.queued for item in sorted(self._heap)]

    def configure(self, max_queue_size: int) -> None:
        """Change the bound. Entries already queued above a smaller bound stay queued."""
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self.max_queue_size = max_queue_size

    def get_queue_status(self) -> dict:
        return {
            "queue_length": len(self._heap),
            "processing": self._processing,
            "average_wait_time": self._average_processing_time(),
            "total_processed": self._total_processed,
        }

    def get_queue_stats(self) -> dict:
        return {
            "current_size": len(self._heap),
            "max_size": self.max_queue_size,
            "total_processed": self._total_processed,
            "total_failed": self._total_failed,
            "average_processing_time": self._average_processing_time(),
            "is_processing": self._processing,
        }

    def _average_processing_time(self) -> float:
        if not self._processing_times:
            return 0.0
        return sum(self._processing_times) / len(self._processing_times)

    @staticmethod
    def _reject(queued: QueuedRequest, reason: str) -> None:
        if queued.future is not None and not queued.future.done():
            queued.future.set_exception(RequestAbortedError(reason))
