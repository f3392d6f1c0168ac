"""Tests for the paced priority request queue."""

from __future__ import annotations

import asyncio

import pytest

from image_gateway.core.exceptions import QueueClearedError, QueueRetryExhaustedError, QueueShutdownError
from image_gateway.gateway.queue_manager import RequestQueue
from image_gateway.gateway.types import RequestPriority, TaskStatus


def _recording_op(log: list, label: str, result=None):
    async def op():
        log.append(label)
        return result if result is not None else label

    return op


class TestOrdering:
    @pytest.mark.asyncio
    async def test_priority_order(self):
        queue = RequestQueue(requests_per_second=1000)
        served: list[str] = []
        futures = [
            queue.enqueue("u", "p", _recording_op(served, "0-first"), priority=0),
            queue.enqueue("u", "p", _recording_op(served, "5"), priority=5),
            queue.enqueue("u", "p", _recording_op(served, "0-second"), priority=0),
            queue.enqueue("u", "p", _recording_op(served, "10"), priority=10),
        ]
        queue.start()
        try:
            await asyncio.wait_for(asyncio.gather(*futures), timeout=2)
        finally:
            await queue.close()

        assert served == ["10", "5", "0-first", "0-second"]

    @pytest.mark.asyncio
    async def test_admin_priority_first(self):
        queue = RequestQueue(requests_per_second=1000)
        queue.enqueue("u", "p", _recording_op([], "premium"), priority=RequestPriority.PREMIUM)
        queue.enqueue_priority("system", "p", _recording_op([], "admin"))
        assert queue.pending_tasks()[0].priority == RequestPriority.ADMIN
        queue.clear_queue()

    @pytest.mark.asyncio
    async def test_retry_served_before_equal_priority(self):
        queue = RequestQueue(requests_per_second=1000)
        queue.enqueue("u", "fresh", _recording_op([], "fresh"), priority=0)
        queue.enqueue("u", "retry", _recording_op([], "retry"), priority=0)
        retry_task = queue._normal.pop()
        retry_task.retry_count = 1
        queue._retry.append(retry_task)

        assert queue._next_task() is retry_task
        queue.clear_queue()

    @pytest.mark.asyncio
    async def test_higher_priority_beats_retry(self):
        queue = RequestQueue(requests_per_second=1000)
        queue.enqueue("u", "low", _recording_op([], "low"), priority=0)
        retry_task = queue._normal.pop()
        queue._retry.append(retry_task)
        queue.enqueue("u", "high", _recording_op([], "high"), priority=10)

        assert queue._next_task().payload == "high"
        assert queue._next_task() is retry_task

    @pytest.mark.asyncio
    async def test_queue_position(self):
        queue = RequestQueue(requests_per_second=1000)
        queue.enqueue("u", "a", _recording_op([], "a"))
        queue.enqueue("u", "b", _recording_op([], "b"), priority=5)
        tasks = queue.pending_tasks()
        assert queue.get_queue_position(tasks[0].task_id) == 1
        assert tasks[0].payload == "b"
        assert queue.get_queue_position(tasks[1].task_id) == 2
        assert queue.get_queue_position("nope") == -1
        queue.clear_queue()


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_then_rejects(self):
        queue = RequestQueue(requests_per_second=1000, max_retries=3)
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            raise RuntimeError("provider down")

        future = queue.enqueue("u", "p", failing)
        queue.start()
        try:
            with pytest.raises(QueueRetryExhaustedError) as exc_info:
                await asyncio.wait_for(future, timeout=2)
        finally:
            await queue.close()

        assert calls == 4
        assert exc_info.value.retry_count == 3
        assert "failed after 3 retries" in str(exc_info.value)
        assert "provider down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failure(self):
        queue = RequestQueue(requests_per_second=1000, max_retries=3)
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError("blip")
            return "done"

        future = queue.enqueue("u", "p", flaky)
        queue.start()
        try:
            assert await asyncio.wait_for(future, timeout=2) == "done"
        finally:
            await queue.close()

        metrics = queue.get_metrics()
        assert metrics["processed_requests"] == 1
        assert metrics["retried_requests"] == 2
        assert metrics["failed_requests"] == 0


class TestAdministration:
    @pytest.mark.asyncio
    async def test_clear_rejects_pending(self):
        queue = RequestQueue(requests_per_second=1000)
        futures = [queue.enqueue("u", str(i), _recording_op([], str(i))) for i in range(3)]
        tasks = queue.pending_tasks()

        assert queue.clear_queue() == 3
        for future in futures:
            with pytest.raises(QueueClearedError, match="Queue cleared"):
                await future
        assert all(t.status == TaskStatus.CANCELLED for t in tasks)
        assert queue.depth() == 0

    @pytest.mark.asyncio
    async def test_close_rejects_pending(self):
        queue = RequestQueue(requests_per_second=1000)
        future = queue.enqueue("u", "p", _recording_op([], "p"))
        await queue.close()
        with pytest.raises(QueueShutdownError):
            await future

    @pytest.mark.asyncio
    async def test_stop_processing_keeps_tasks(self):
        queue = RequestQueue(requests_per_second=1000)
        queue.start()
        await queue.stop_processing()
        assert not queue.is_running
        future = queue.enqueue("u", "p", _recording_op([], "p"))
        await asyncio.sleep(0.01)
        assert not future.done()
        assert queue.depth() == 1
        queue.clear_queue()

    @pytest.mark.asyncio
    async def test_enqueue_does_not_block(self):
        queue = RequestQueue(requests_per_second=1)
        for i in range(100):
            queue.enqueue("u", str(i), _recording_op([], str(i)))
        assert queue.depth() == 100
        assert queue.get_status()["total_requests"] == 100
        queue.clear_queue()

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RequestQueue(requests_per_second=0)

    @pytest.mark.asyncio
    async def test_metrics_after_success(self):
        queue = RequestQueue(requests_per_second=1000)
        future = queue.enqueue("u", "p", _recording_op([], "p", result=42))
        queue.start()
        try:
            assert await asyncio.wait_for(future, timeout=2) == 42
        finally:
            await queue.close()

        metrics = queue.get_metrics()
        assert metrics["processed_requests"] == 1
        assert metrics["queue_length"] == 0
        assert metrics["average_wait_time"] >= 0
        assert metrics["processing_rate"] == 1000


async def _until_in_flight(queue: RequestQueue) -> None:
    for _ in range(400):
        if queue._in_flight:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("task never dispatched")


def _gated_op(gate: asyncio.Event, error: Exception | None = None, result="done"):
    async def op():
        await gate.wait()
        if error is not None:
            raise error
        return result

    return op


class TestInFlightSettlement:
    @pytest.mark.asyncio
    async def test_in_flight_failure_during_close_is_rejected(self):
        queue = RequestQueue(requests_per_second=1000, max_retries=3)
        gate = asyncio.Event()
        future = queue.enqueue("u", "p", _gated_op(gate, error=RuntimeError("provider down")))
        queue.start()
        await _until_in_flight(queue)
        assert queue.depth() == 0

        closing = asyncio.create_task(queue.close())
        await asyncio.sleep(0)
        gate.set()
        await asyncio.wait_for(closing, timeout=2)

        with pytest.raises(QueueShutdownError) as exc_info:
            await asyncio.wait_for(future, timeout=1)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert queue.depth() == 0
        assert len(queue._retry) == 0

    @pytest.mark.asyncio
    async def test_in_flight_success_during_close_is_delivered(self):
        queue = RequestQueue(requests_per_second=1000)
        gate = asyncio.Event()
        future = queue.enqueue("u", "p", _gated_op(gate, result="image"))
        queue.start()
        await _until_in_flight(queue)

        closing = asyncio.create_task(queue.close())
        await asyncio.sleep(0)
        gate.set()
        await asyncio.wait_for(closing, timeout=2)

        assert await asyncio.wait_for(future, timeout=1) == "image"

    @pytest.mark.asyncio
    async def test_clear_queue_leaves_in_flight_running(self):
        queue = RequestQueue(requests_per_second=1000)
        gate = asyncio.Event()
        running = queue.enqueue("u", "running", _gated_op(gate, result="image"))
        queue.start()
        try:
            await _until_in_flight(queue)
            await queue.stop_processing()
            waiting = queue.enqueue("u", "waiting", _recording_op([], "waiting"))

            assert queue.clear_queue() == 1
            gate.set()

            assert await asyncio.wait_for(running, timeout=2) == "image"
            with pytest.raises(QueueClearedError):
                await waiting
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_enqueue_after_close_is_rejected(self):
        queue = RequestQueue(requests_per_second=1000)
        queue.start()
        await queue.close()

        future = queue.enqueue("u", "p", _recording_op([], "p"))
        with pytest.raises(QueueShutdownError):
            await asyncio.wait_for(future, timeout=1)
        assert queue.depth() == 0


class TestWaitMetrics:
    @pytest.mark.asyncio
    async def test_average_wait_excludes_processing_time(self, clock):
        queue = RequestQueue(requests_per_second=1000, clock=clock)

        async def slow():
            clock.advance(10)
            return "done"

        future = queue.enqueue("u", "p", slow)
        clock.advance(2)
        queue.start()
        try:
            assert await asyncio.wait_for(future, timeout=2) == "done"
        finally:
            await queue.close()

        assert queue.get_metrics()["average_wait_time"] == pytest.approx(2)
        assert queue.get_status()["average_wait_time"] == pytest.approx(2)
