"""
Bounded retry scheduling for order-line delivery.

Try N runs ``(N - 1) * base_delay`` after the attempt that scheduled it, so
with the defaults the five retries start 0, 1, 2, 3 and 4 minutes after the
previous failure. The job id is a pure function of (order, line, try), which
makes scheduling the same try twice a no-op.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from topup_fulfillment.core.job_queue import PENDING_STATES, Job, RedisJobQueue
from topup_fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOPUP_QUEUE = "topup"
TOPUP_JOB_NAME = "topup"
MAX_TRIES = 5
BASE_DELAY_MS = 60_000


@dataclass
class RetryJobView:
    """Operational view of one pending retry job."""

    job_id: str
    state: str
    next_run_at: Optional[datetime]
    order_id: str
    order_line_id: str
    next_try: int
    tries_total: int
    tries_remaining_including_next: int
    payment_provider: Optional[str]
    payment_provider_ref: Optional[str]


class RetryScheduler:
    """Enqueues and lists delayed delivery retries."""

    def __init__(
        self,
        queue: RedisJobQueue,
        max_tries: int = MAX_TRIES,
        base_delay_ms: int = BASE_DELAY_MS,
    ):
        self.queue = queue
        self.max_tries = max_tries
        self.base_delay_ms = base_delay_ms

    @staticmethod
    def job_key(order_id: uuid.UUID | str, line_id: uuid.UUID | str, try_number: int) -> str:
        return f"topup:{order_id}:{line_id}:try{try_number}"

    def delay_for(self, try_number: int) -> int:
        """Delay in ms before try ``try_number`` becomes runnable."""
        return max(0, try_number - 1) * self.base_delay_ms

    async def schedule_retry(
        self,
        order_id: uuid.UUID | str,
        line_id: uuid.UUID | str,
        try_number: int,
        payment_provider: Optional[str] = "stripe",
        payment_provider_ref: Optional[str] = None,
    ) -> bool:
        """
        Enqueue delivery try ``try_number`` for an order line.

        Returns:
            bool: True if a job was created; False for a duplicate or when
            ``try_number`` is past the bound
        """
        if try_number > self.max_tries:
            logger.info(
                "retry_bound_reached",
                order_id=str(order_id),
                order_line_id=str(line_id),
                try_number=try_number,
            )
            return False

        payload: Dict[str, Any] = {
            "order_id": str(order_id),
            "order_line_id": str(line_id),
            "try": try_number,
            "payment_provider": payment_provider,
            "payment_provider_ref": payment_provider_ref,
        }
        created = await self.queue.add(
            TOPUP_JOB_NAME,
            payload,
            job_id=self.job_key(order_id, line_id, try_number),
            delay_ms=self.delay_for(try_number),
        )
        metrics.record_retry_scheduled(try_number, created)

        logger.info(
            "retry_scheduled" if created else "retry_already_scheduled",
            order_id=str(order_id),
            order_line_id=str(line_id),
            try_number=try_number,
            delay_ms=self.delay_for(try_number),
        )
        return created

    def _view(self, job: Job) -> RetryJobView:
        data = job.data
        next_try = int(data.get("try", 1))
        return RetryJobView(
            job_id=job.id,
            state=job.state,
            next_run_at=job.next_run_at,
            order_id=data.get("order_id", ""),
            order_line_id=data.get("order_line_id", ""),
            next_try=next_try,
            tries_total=self.max_tries,
            tries_remaining_including_next=max(0, self.max_tries - next_try + 1),
            payment_provider=data.get("payment_provider"),
            payment_provider_ref=data.get("payment_provider_ref"),
        )

    async def list_pending(
        self,
        order_id: Optional[uuid.UUID | str] = None,
        line_id: Optional[uuid.UUID | str] = None,
        limit: int = 200,
    ) -> List[RetryJobView]:
        """
        List delayed, waiting and in-flight retry jobs.

        Args:
            order_id: Only jobs for this order
            line_id: Only jobs for this order line
            limit: Maximum rows returned
        """
        jobs = await self.queue.get_jobs(PENDING_STATES, 0, None)
        views = []
        for job in jobs:
            if order_id is not None and job.data.get("order_id") != str(order_id):
                continue
            if line_id is not None and job.data.get("order_line_id") != str(line_id):
                continue
            views.append(self._view(job))
        return views[:limit]

    async def get_job(self, job_id: str) -> Optional[RetryJobView]:
        job = await self.queue.get_job(job_id)
        if job is None:
            return None
        return self._view(job)
