"""Request Queue — priority-ordered, rate-paced scheduler with bounded retry.

Two lanes:
  - normal lane: ordered by descending priority, FIFO among equal priorities
  - retry lane: FIFO of tasks whose operation failed and still has retries

A single consumer loop ticks at ``requests_per_second`` and dispatches at
most one task per tick (and never more than ``max_in_flight`` outstanding),
so downstream pressure is bounded by the pace, not by how fast producers
enqueue. Producers never block; queue depth is the pressure gauge.

Retries cut in line: the retry lane head is served before any normal task of
equal or lower priority. A fresh task with strictly higher priority still
goes first, so a low-priority task stuck retrying cannot starve high-priority
traffic.

Task lifecycle:
  PENDING -> IN_FLIGHT -> SUCCEEDED
                       -> RETRY_PENDING -> IN_FLIGHT ...
                       -> FAILED
  PENDING/RETRY_PENDING -> CANCELLED (clear_queue / close)
  IN_FLIGHT -> CANCELLED (operation failed after close)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from image_gateway.core.exceptions import (
    QueueClearedError,
    QueueRetryExhaustedError,
    QueueShutdownError,
)
from image_gateway.core.metrics import QUEUE_DEPTH
from image_gateway.gateway.types import QueuedTask, RequestPriority, TaskStatus

logger = logging.getLogger(__name__)


class RequestQueue:
    """Single-consumer priority queue with a retry lane.

    Usage:
        queue = RequestQueue(requests_per_second=50, max_retries=3)
        queue.start()

        result = await queue.enqueue(user_id, prompt, lambda: provider_call(...), priority=10)

        await queue.close()
    """

    def __init__(
        self,
        requests_per_second: float = 50.0,
        max_retries: int = 3,
        max_in_flight: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")

        self.requests_per_second = requests_per_second
        self.max_retries = max_retries
        self.max_in_flight = max_in_flight
        self._interval = 1.0 / requests_per_second
        self._clock = clock

        self._normal: list[QueuedTask] = []
        self._retry: deque[QueuedTask] = deque()
        self._in_flight: set[asyncio.Task] = set()

        self._running = False
        self._closed = False
        self._consumer: asyncio.Task | None = None

        # Metrics
        self._processed = 0
        self._failed = 0
        self._retried = 0
        self._total_wait = 0.0
        self._dispatched = 0
        self._started_at = clock()

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._closed = False
        self._started_at = self._clock()
        self._consumer = asyncio.create_task(self._consume(), name="request-queue-consumer")
        logger.info("Queue processing started (%.1f req/s)", self.requests_per_second)

    async def stop_processing(self) -> None:
        """Stop dispatching. Pending tasks stay queued; in-flight ones finish."""
        if not self._running:
            return
        self._running = False
        if self._consumer:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None
        logger.warning("Queue processing stopped (%d pending)", self.depth())

    async def close(self) -> None:
        """Stop dispatching, reject everything pending, wait for in-flight work.

        In-flight work that fails after this point is rejected with
        QueueShutdownError instead of going back to the retry lane.
        """
        self._closed = True
        await self.stop_processing()
        self._reject_all(lambda: QueueShutdownError("Queue shut down"))
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    # -- producers -------------------------------------------------------------

    def enqueue(
        self,
        identity: str,
        payload: str,
        operation: Callable[[], Awaitable[Any]],
        priority: int = RequestPriority.NORMAL.value,
    ) -> asyncio.Future:
        """Queue *operation* and return a future for its result. Never blocks."""
        future = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(QueueShutdownError("Queue shut down"))
            return future

        task = QueuedTask(
            identity=identity,
            payload=payload,
            operation=operation,
            future=future,
            priority=int(priority),
            enqueued_at=self._clock(),
        )

        # Insert before the first task of strictly lower priority (stable)
        index = next((i for i, t in enumerate(self._normal) if t.priority < task.priority), len(self._normal))
        self._normal.insert(index, task)
        QUEUE_DEPTH.set(self.depth())

        logger.debug(
            "Enqueued task %s for %s (priority=%d, depth=%d)",
            task.task_id,
            identity,
            task.priority,
            self.depth(),
        )
        return future

    def enqueue_priority(
        self,
        identity: str,
        payload: str,
        operation: Callable[[], Awaitable[Any]],
    ) -> asyncio.Future:
        """Queue admin/system work ahead of all user traffic."""
        return self.enqueue(identity, payload, operation, priority=RequestPriority.ADMIN.value)

    # -- consumer ----------------------------------------------------------------

    def _next_task(self) -> QueuedTask | None:
        if self._retry:
            retry_head = self._retry[0]
            if not self._normal or self._normal[0].priority <= retry_head.priority:
                return self._retry.popleft()
        if self._normal:
            return self._normal.pop(0)
        return None

    async def _consume(self) -> None:
        while self._running:
            try:
                if len(self._in_flight) < self.max_in_flight:
                    task = self._next_task()
                    if task is not None:
                        self._dispatch(task)
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

    def _dispatch(self, task: QueuedTask) -> None:
        if task.future.done():
            # Caller gave up (e.g. cancelled); nothing to deliver
            task.status = TaskStatus.CANCELLED
            return
        task.status = TaskStatus.IN_FLIGHT
        QUEUE_DEPTH.set(self.depth())
        runner = asyncio.create_task(self._process(task))
        self._in_flight.add(runner)
        runner.add_done_callback(self._in_flight.discard)

    async def _process(self, task: QueuedTask) -> None:
        started = self._clock()
        if task.retry_count == 0:
            self._dispatched += 1
            self._total_wait += started - task.enqueued_at
        logger.info(
            "Processing task %s for %s (waited %.3fs, retry %d)",
            task.task_id,
            task.identity,
            started - task.enqueued_at,
            task.retry_count,
        )

        try:
            result = await task.operation()
        except Exception as e:
            logger.error(
                "Task %s failed (retry %d/%d): %s",
                task.task_id,
                task.retry_count,
                self.max_retries,
                e,
            )
            if self._closed:
                task.status = TaskStatus.CANCELLED
                self._failed += 1
                if not task.future.done():
                    error = QueueShutdownError("Queue shut down")
                    error.__cause__ = e
                    task.future.set_exception(error)
                return

            if task.retry_count < self.max_retries:
                task.retry_count += 1
                task.status = TaskStatus.RETRY_PENDING
                self._retried += 1
                self._retry.append(task)
                QUEUE_DEPTH.set(self.depth())
                logger.info("Task %s queued for retry %d", task.task_id, task.retry_count)
                return

            task.status = TaskStatus.FAILED
            self._failed += 1
            if not task.future.done():
                error = QueueRetryExhaustedError(
                    f"Request failed after {self.max_retries} retries: {e}",
                    retry_count=task.retry_count,
                )
                error.__cause__ = e
                task.future.set_exception(error)
            return

        finished = self._clock()
        task.status = TaskStatus.SUCCEEDED
        self._processed += 1
        logger.info(
            "Task %s completed in %.3fs (total %.3fs)",
            task.task_id,
            finished - started,
            finished - task.enqueued_at,
        )
        if not task.future.done():
            task.future.set_result(result)

    # -- administration ----------------------------------------------------------

    def _reject_all(self, make_error: Callable[[], Exception]) -> int:
        pending = list(self._retry) + self._normal
        self._retry.clear()
        self._normal.clear()
        for task in pending:
            task.status = TaskStatus.CANCELLED
            if not task.future.done():
                task.future.set_exception(make_error())
        QUEUE_DEPTH.set(0)
        return len(pending)

    def clear_queue(self) -> int:
        """Reject every pending task with QueueClearedError. Returns count cleared."""
        cleared = self._reject_all(lambda: QueueClearedError("Queue cleared"))
        logger.warning("Queue cleared (%d tasks rejected)", cleared)
        return cleared

    # -- introspection -------------------------------------------------------------

    def depth(self) -> int:
        return len(self._normal) + len(self._retry)

    def pending_tasks(self) -> list[QueuedTask]:
        """Pending tasks in the order they would be served (retry lane first)."""
        return list(self._retry) + list(self._normal)

    def get_queue_position(self, task_id: str) -> int:
        """1-based position of a pending task, or -1 if not queued."""
        for position, task in enumerate(self.pending_tasks(), start=1):
            if task.task_id == task_id:
                return position
        return -1

    def get_status(self) -> dict:
        return {
            "total_requests": self.depth(),
            "in_flight": len(self._in_flight),
            "processing_rate": self.requests_per_second,
            "average_wait_time": self._total_wait / self._dispatched if self._dispatched else 0.0,
            "is_processing": self._running and (self.depth() > 0 or bool(self._in_flight)),
        }

    def get_metrics(self) -> dict:
        uptime = max(self._clock() - self._started_at, 1e-9)
        uptime_hours = uptime / 3600
        return {
            "queue_length": self.depth(),
            "retry_lane_length": len(self._retry),
            "in_flight": len(self._in_flight),
            "processed_requests": self._processed,
            "failed_requests": self._failed,
            "retried_requests": self._retried,
            "average_wait_time": self._total_wait / self._dispatched if self._dispatched else 0.0,
            "uptime_hours": uptime_hours,
            "requests_per_hour": self._processed / uptime_hours,
            "is_processing": self._running,
            "processing_rate": self.requests_per_second,
        }
