"""
Delayed job queue on Redis.

Layout per queue (``{prefix}:{name}``):
- ``job:{id}``  JSON job record, created with NX so a job id is enqueued once
- ``delayed``   sorted set of job ids scored by run-at epoch ms
- ``active``    sorted set of claimed job ids scored by claim time

A job is claimed by whoever manages to ``ZREM`` it from ``delayed``.
Finished records stay around for a retention period so their ids keep
deduplicating re-adds.
"""
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as aioredis
import structlog

from topup_fulfillment.timeutils import from_epoch_ms

logger = structlog.get_logger(__name__)

PENDING_STATES = ("delayed", "waiting", "active")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    """A queued unit of work."""

    id: str
    name: str
    data: Dict[str, Any]
    created_at_ms: int
    delay_ms: int
    run_at_ms: int
    state: str = "delayed"
    finished_at_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def next_run_at(self) -> Optional[datetime]:
        """Scheduled run time, only meaningful while the job is delayed."""
        if self.state != "delayed":
            return None
        return from_epoch_ms(self.run_at_ms)

    def to_record(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "name": self.name,
                "data": self.data,
                "created_at_ms": self.created_at_ms,
                "delay_ms": self.delay_ms,
                "run_at_ms": self.run_at_ms,
                "state": self.state,
                "finished_at_ms": self.finished_at_ms,
                "error": self.error,
            }
        )

    @classmethod
    def from_record(cls, raw: str) -> "Job":
        payload = json.loads(raw)
        return cls(
            id=payload["id"],
            name=payload["name"],
            data=payload.get("data") or {},
            created_at_ms=payload["created_at_ms"],
            delay_ms=payload.get("delay_ms", 0),
            run_at_ms=payload["run_at_ms"],
            state=payload.get("state", "delayed"),
            finished_at_ms=payload.get("finished_at_ms"),
            error=payload.get("error"),
        )


class RedisJobQueue:
    """
    Named delayed-job queue.

    The Redis client is injected; the queue holds no connection of its own.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        name: str,
        prefix: str = "tohfa",
        completed_retention_seconds: int = 86400,
    ):
        self.redis = redis_client
        self.name = name
        self.prefix = prefix
        self.completed_retention_seconds = completed_retention_seconds

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    @property
    def delayed_key(self) -> str:
        return self._key("delayed")

    @property
    def active_key(self) -> str:
        return self._key("active")

    async def add(
        self,
        name: str,
        data: Dict[str, Any],
        job_id: str,
        delay_ms: int = 0,
        now_ms: Optional[int] = None,
    ) -> bool:
        """
        Enqueue a job unless a job with the same id already exists.

        Args:
            name: Job name
            data: JSON-serializable payload
            job_id: Identity key used for deduplication
            delay_ms: Delay before the job becomes runnable
            now_ms: Clock override (epoch ms)

        Returns:
            bool: True if the job was created, False if it was a duplicate
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        job = Job(
            id=job_id,
            name=name,
            data=data,
            created_at_ms=now_ms,
            delay_ms=max(0, delay_ms),
            run_at_ms=now_ms + max(0, delay_ms),
        )

        created = await self.redis.set(self._job_key(job_id), job.to_record(), nx=True)
        if not created:
            logger.info("job_duplicate_dropped", queue=self.name, job_id=job_id)
            return False

        await self.redis.zadd(self.delayed_key, {job_id: job.run_at_ms})
        logger.info(
            "job_enqueued",
            queue=self.name,
            job_id=job_id,
            job_name=name,
            delay_ms=job.delay_ms,
        )
        return True

    async def claim_due(self, limit: int = 10, now_ms: Optional[int] = None) -> List[Job]:
        """
        Claim up to ``limit`` jobs whose run time has passed.

        Claiming is ``ZREM`` from the delayed set; only the worker whose
        ``ZREM`` removed the id owns the job.
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        due_ids = await self.redis.zrangebyscore(
            self.delayed_key, "-inf", now_ms, start=0, num=limit
        )

        claimed: List[Job] = []
        for job_id in due_ids:
            if not await self.redis.zrem(self.delayed_key, job_id):
                continue  # another worker got it
            await self.redis.zadd(self.active_key, {job_id: now_ms})
            raw = await self.redis.get(self._job_key(job_id))
            if raw is None:
                logger.warning("job_record_missing", queue=self.name, job_id=job_id)
                await self.redis.zrem(self.active_key, job_id)
                continue
            job = Job.from_record(raw)
            job.state = "active"
            claimed.append(job)

        return claimed

    async def complete(self, job: Job, now_ms: Optional[int] = None) -> None:
        await self._finish(job, "completed", None, now_ms)

    async def fail(self, job: Job, error: str, now_ms: Optional[int] = None) -> None:
        await self._finish(job, "failed", error, now_ms)

    async def _finish(
        self, job: Job, state: str, error: Optional[str], now_ms: Optional[int]
    ) -> None:
        job.state = state
        job.error = error
        job.finished_at_ms = _now_ms() if now_ms is None else now_ms

        pipe = self.redis.pipeline()
        pipe.zrem(self.active_key, job.id)
        pipe.set(
            self._job_key(job.id), job.to_record(), ex=self.completed_retention_seconds
        )
        await pipe.execute()

        logger.info("job_finished", queue=self.name, job_id=job.id, state=state, error=error)

    async def recover_stalled(self, older_than_ms: int, now_ms: Optional[int] = None) -> int:
        """
        Put jobs claimed longer than ``older_than_ms`` ago back on the schedule.

        Returns:
            int: Number of jobs moved back
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        stalled = await self.redis.zrangebyscore(
            self.active_key, "-inf", now_ms - older_than_ms
        )
        moved = 0
        for job_id in stalled:
            if await self.redis.zrem(self.active_key, job_id):
                await self.redis.zadd(self.delayed_key, {job_id: now_ms})
                moved += 1
        if moved:
            logger.warning("stalled_jobs_recovered", queue=self.name, count=moved)
        return moved

    async def _state_of(self, job_id: str, now_ms: int) -> Optional[str]:
        if await self.redis.zscore(self.active_key, job_id) is not None:
            return "active"
        score = await self.redis.zscore(self.delayed_key, job_id)
        if score is not None:
            return "delayed" if score > now_ms else "waiting"
        return None

    async def get_job(self, job_id: str, now_ms: Optional[int] = None) -> Optional[Job]:
        now_ms = _now_ms() if now_ms is None else now_ms
        raw = await self.redis.get(self._job_key(job_id))
        if raw is None:
            return None
        job = Job.from_record(raw)
        state = await self._state_of(job_id, now_ms)
        if state is not None:
            job.state = state
        return job

    async def get_jobs(
        self,
        states: Iterable[str] = PENDING_STATES,
        start: int = 0,
        end: Optional[int] = 200,
        now_ms: Optional[int] = None,
    ) -> List[Job]:
        """
        List unfinished jobs in the given states, soonest first.

        Args:
            states: Any of ``delayed``, ``waiting``, ``active``
            start: Offset into the filtered list
            end: Exclusive end offset into the filtered list (None for all)
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        wanted = set(states)

        ids: List[str] = []
        if "active" in wanted:
            ids.extend(await self.redis.zrange(self.active_key, 0, -1))
        if wanted & {"delayed", "waiting"}:
            ids.extend(await self.redis.zrange(self.delayed_key, 0, -1))

        jobs: List[Job] = []
        for job_id in ids:
            job = await self.get_job(job_id, now_ms=now_ms)
            if job is not None and job.state in wanted:
                jobs.append(job)

        return jobs[start:end]

    async def count_pending(self) -> int:
        return int(await self.redis.zcard(self.delayed_key)) + int(
            await self.redis.zcard(self.active_key)
        )
