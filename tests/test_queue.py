"""Tests for the single-worker digest build queue."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from digestcore.digest.queue import BuildJob, DigestQueue
from digestcore.errors import QueueMisconfiguredError
from digestcore.observability.metrics import DIGEST_RUN, InMemoryMetrics

START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = START + timedelta(hours=24)


class RecordingProcessor:
    """Returns the channel id, remembers start order and peak concurrency."""

    def __init__(self, fail_on=(), delay: float = 0.01, delays=None):
        self.fail_on = set(fail_on)
        self.delay = delay
        self.delays = delays or {}
        self.started = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, job: BuildJob) -> str:
        self.started.append(job.channel_id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delays.get(job.channel_id, self.delay))
            if job.channel_id in self.fail_on:
                raise RuntimeError(f"build failed for {job.channel_id}")
            return job.channel_id
        finally:
            self.running -= 1


class TestDigestQueue:
    @pytest.mark.asyncio
    async def test_fifo_one_at_a_time(self):
        # The first job is the slowest; later jobs must still wait for it
        processor = RecordingProcessor(delays={"a": 0.05, "b": 0, "c": 0.02})
        queue = DigestQueue(processor)

        futures = [queue.enqueue(c, START, END) for c in ("a", "b", "c")]
        assert queue.length == 3
        assert queue.processing

        results = await asyncio.gather(*futures)

        assert results == ["a", "b", "c"]
        assert processor.started == ["a", "b", "c"]
        assert processor.max_running == 1

    @pytest.mark.asyncio
    async def test_job_carries_request(self):
        seen = []

        async def processor(job):
            seen.append(job)
            return "ok"

        queue = DigestQueue(processor)
        assert await queue.enqueue("general", START, END, tenant_id="t1") == "ok"
        job = seen[0]
        assert (job.channel_id, job.window_start, job.window_end, job.tenant_id) == ("general", START, END, "t1")

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_later_jobs(self):
        processor = RecordingProcessor(fail_on={"bad"}, delays={"good-1": 0.03, "bad": 0})
        queue = DigestQueue(processor)

        good_1 = queue.enqueue("good-1", START, END)
        bad = queue.enqueue("bad", START, END)
        good_2 = queue.enqueue("good-2", START, END)

        assert await good_1 == "good-1"
        with pytest.raises(RuntimeError, match="build failed for bad"):
            await bad
        assert await good_2 == "good-2"

    @pytest.mark.asyncio
    async def test_missing_processor_rejects_all(self):
        metrics = InMemoryMetrics()
        queue = DigestQueue(metrics=metrics)
        futures = [queue.enqueue(c, START, END) for c in ("a", "b")]

        for future in futures:
            with pytest.raises(QueueMisconfiguredError):
                await future
        await queue.join()
        assert queue.length == 0
        assert not queue.processing

        events = metrics.of_type(DIGEST_RUN)
        assert [(e.operation, e.status) for e in events] == [("a", "failure"), ("b", "failure")]
        assert events[0].metadata == {"error": "Digest queue processor not configured", "rejected": 2}

    @pytest.mark.asyncio
    async def test_set_processor_after_construction(self):
        queue = DigestQueue()
        queue.set_processor(RecordingProcessor())
        assert await queue.enqueue("a", START, END) == "a"

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_block_queue(self):
        gate = asyncio.Event()
        started = []

        async def processor(job):
            started.append(job.channel_id)
            if job.channel_id == "first":
                await gate.wait()
            return job.channel_id

        queue = DigestQueue(processor)
        first = queue.enqueue("first", START, END)
        second = queue.enqueue("second", START, END)
        third = queue.enqueue("third", START, END)

        await asyncio.sleep(0)
        second.cancel()
        gate.set()

        assert await first == "first"
        assert await third == "third"
        assert second.cancelled()
        # The abandoned build still ran in its turn
        assert started == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_restarts_after_going_idle(self):
        processor = RecordingProcessor()
        queue = DigestQueue(processor)

        assert await queue.enqueue("a", START, END) == "a"
        await queue.join()
        assert not queue.processing

        assert await queue.enqueue("b", START, END) == "b"
        assert processor.started == ["a", "b"]

    def test_enqueue_requires_running_loop(self):
        queue = DigestQueue(RecordingProcessor())
        with pytest.raises(RuntimeError):
            queue.enqueue("a", START, END)
