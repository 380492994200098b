"""Single-worker FIFO queue that runs digest builds one at a time.

Builds hit a rate-limited LLM, so the whole process shares one queue and never
runs two builds concurrently. State lives in memory and is lost on restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Deque, Optional

from digestcore.digest.models import BuildStage
from digestcore.errors import QueueMisconfiguredError
from digestcore.observability.metrics import DIGEST_RUN

if TYPE_CHECKING:
    from digestcore.digest.models import DigestResult
    from digestcore.observability.metrics import MetricsSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildJob:
    channel_id: str
    window_start: datetime
    window_end: datetime
    tenant_id: Optional[str]
    result: "asyncio.Future[DigestResult]"
    enqueued_at: float


Processor = Callable[[BuildJob], Awaitable["DigestResult"]]


class DigestQueue:
    """Strict FIFO, at most one job running, each job's future settled exactly once.

    A failing job never affects the jobs behind it. If a caller cancels its
    future the build still runs when its turn comes; the result is dropped.

    Usage:
        queue = DigestQueue(generator.run_job, metrics)
        result = await queue.enqueue("general", start, end, tenant_id="t1")
    """

    def __init__(
        self,
        processor: Optional[Processor] = None,
        metrics: Optional["MetricsSink"] = None,
    ) -> None:
        self._processor = processor
        self.metrics = metrics
        self._jobs: Deque[BuildJob] = deque()
        self._processing = False
        self._worker: Optional[asyncio.Task] = None

    def set_processor(self, processor: Processor) -> None:
        self._processor = processor

    @property
    def length(self) -> int:
        """Jobs waiting (not counting the one running)."""
        return len(self._jobs)

    @property
    def processing(self) -> bool:
        return self._processing

    def enqueue(
        self,
        channel_id: str,
        window_start: datetime,
        window_end: datetime,
        tenant_id: Optional[str] = None,
    ) -> "asyncio.Future[DigestResult]":
        """Queue a build and return the future for its result. Must be called from a running loop."""
        loop = asyncio.get_running_loop()
        job = BuildJob(
            channel_id=channel_id,
            window_start=window_start,
            window_end=window_end,
            tenant_id=tenant_id,
            result=loop.create_future(),
            enqueued_at=time.monotonic(),
        )
        self._jobs.append(job)
        logger.info(
            "Digest job %s: %s (position %d, running=%s)",
            channel_id, BuildStage.QUEUED.value, len(self._jobs), self._processing,
        )

        if not self._processing:
            self._processing = True
            self._worker = loop.create_task(self._drain())
        return job.result

    async def join(self) -> None:
        """Wait until the queue is idle."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    async def _drain(self) -> None:
        try:
            while self._jobs:
                if self._processor is None:
                    await self._reject_all(QueueMisconfiguredError("Digest queue processor not configured"))
                    return

                job = self._jobs.popleft()
                logger.info(
                    "Processing digest job %s (remaining=%d, waited=%dms)",
                    job.channel_id, len(self._jobs),
                    int((time.monotonic() - job.enqueued_at) * 1000),
                )
                try:
                    result = await self._processor(job)
                except asyncio.CancelledError:
                    if not job.result.done():
                        job.result.cancel()
                    raise
                except Exception as e:
                    logger.error("Digest job %s failed: %s", job.channel_id, e)
                    if not job.result.done():
                        job.result.set_exception(e)
                    continue

                if not job.result.done():
                    job.result.set_result(result)
                else:
                    logger.info("Digest job %s finished after its caller gave up", job.channel_id)
        finally:
            self._processing = False

    async def _reject_all(self, error: Exception) -> None:
        rejected = len(self._jobs)
        logger.error("%s; rejecting %d job(s)", error, rejected)
        while self._jobs:
            job = self._jobs.popleft()
            if not job.result.done():
                job.result.set_exception(error)
            if self.metrics is not None:
                await self.metrics.record(
                    DIGEST_RUN, job.channel_id, "failure", {"error": str(error), "rejected": rejected}
                )
