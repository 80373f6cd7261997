"""Polling loop that runs due jobs from a Redis job queue."""
import asyncio
from typing import Any, Awaitable, Callable

import structlog

from topup_fulfillment.core.job_queue import Job, RedisJobQueue
from topup_fulfillment.monitoring.logging import job_context
from topup_fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class JobLoop:
    """
    Claims due jobs and runs them with bounded concurrency.

    A handler exception marks the job failed; the loop keeps going.
    """

    def __init__(
        self,
        queue: RedisJobQueue,
        handler: JobHandler,
        concurrency: int = 10,
        poll_interval_seconds: float = 1.0,
        stalled_after_ms: int = 120_000,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.stalled_after_ms = stalled_after_ms
        self.running = False

    async def _run_job(self, job: Job) -> None:
        with job_context(job.id, job.name):
            try:
                await self.handler(job)
            except Exception as e:
                logger.exception("job_failed", queue=self.queue.name)
                await self.queue.fail(job, str(e) or e.__class__.__name__)
                return
            await self.queue.complete(job)

    async def run_once(self) -> int:
        """
        Run one batch of due jobs.

        Returns:
            int: Number of jobs processed
        """
        await self.queue.recover_stalled(self.stalled_after_ms)
        jobs = await self.queue.claim_due(limit=self.concurrency)
        if jobs:
            await asyncio.gather(*(self._run_job(job) for job in jobs))
        metrics.set_queue_depth(self.queue.name, await self.queue.count_pending())
        return len(jobs)

    async def run_forever(self) -> None:
        """Poll until ``stop`` is called."""
        self.running = True
        logger.info("job_loop_started", queue=self.queue.name, concurrency=self.concurrency)
        while self.running:
            try:
                processed = await self.run_once()
            except Exception as e:
                # Redis hiccup; back off one interval and try again
                logger.error("job_loop_error", queue=self.queue.name, error=str(e))
                processed = 0
            if not processed:
                await asyncio.sleep(self.poll_interval_seconds)
        logger.info("job_loop_stopped", queue=self.queue.name)

    def stop(self) -> None:
        self.running = False
