"""At-least-once job queue on Redis lists and sorted sets.

Layout under ``unbias:<queue>:``:

* ``waiting`` list of job ids ready to run (FIFO)
* ``active`` list of job ids currently reserved by a worker
* ``leases`` sorted set, job id scored by lease expiry
* ``delayed`` sorted set, job id scored by the time it becomes ready again
* ``completed`` / ``failed`` bounded history lists
* ``job:<id>`` hash holding payload and attempt bookkeeping

A reserved job whose lease expires is considered stalled and goes back to
``waiting``, so handlers must tolerate duplicate delivery. A job that stalls
more than ``max_stalled`` times is failed instead.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis

from unbias_pipeline.jobs.errors import ErrorKind
from unbias_pipeline.jobs.models import AnalysisJobData

logger = logging.getLogger(__name__)

KEY_PREFIX = "unbias"
STALLED_LIMIT_MESSAGE = "Job stalled more than allowable limit"


@dataclass(slots=True)
class QueueJob:
    """One delivery of a queued job."""

    id: str
    data: AnalysisJobData
    attempts_made: int
    max_attempts: int
    backoff_base_seconds: float

    def backoff_delay(self) -> float:
        """Exponential backoff: base, 2*base, 4*base, ..."""

        return self.backoff_base_seconds * (2**self.attempts_made)


@dataclass(slots=True)
class QueueCounts:
    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int


@dataclass(slots=True)
class StalledJobs:
    requeued: list[str] = field(default_factory=list)
    failed: list[QueueJob] = field(default_factory=list)


class JobQueue:
    """Redis-backed queue with leases, exponential backoff and bounded history."""

    def __init__(
        self,
        redis: Redis,
        *,
        name: str = "analysis-queue",
        default_attempts: int = 3,
        default_backoff_seconds: float = 5.0,
        keep_completed: int = 100,
        keep_failed: int = 500,
        max_stalled: int = 1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis
        self.name = name
        self.default_attempts = default_attempts
        self.default_backoff_seconds = default_backoff_seconds
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.max_stalled = max_stalled
        self._clock = clock

    def _key(self, suffix: str) -> str:
        return f"{KEY_PREFIX}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    async def enqueue(
        self,
        data: AnalysisJobData,
        *,
        attempts: int | None = None,
        backoff_base_seconds: float | None = None,
    ) -> str:
        """Append a job to ``waiting`` and return its queue id."""

        queue_job_id = uuid4().hex
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(queue_job_id),
                mapping={
                    "id": queue_job_id,
                    "data": json.dumps(data.to_dict()),
                    "attempts_made": 0,
                    "max_attempts": attempts or self.default_attempts,
                    "backoff_base": (
                        self.default_backoff_seconds
                        if backoff_base_seconds is None
                        else backoff_base_seconds
                    ),
                    "state": "waiting",
                    "enqueued_at": self._clock(),
                },
            )
            pipe.rpush(self._key("waiting"), queue_job_id)
            await pipe.execute()
        logger.info("Enqueued queue job %s for job %s", queue_job_id, data.job_id)
        return queue_job_id

    async def reserve(self, *, worker_id: str, lease_seconds: float) -> QueueJob | None:
        """Move the oldest ready job to ``active`` and lease it to ``worker_id``."""

        await self.promote_delayed()
        queue_job_id = await self.redis.lmove(
            self._key("waiting"),
            self._key("active"),
            "LEFT",
            "RIGHT",
        )
        if queue_job_id is None:
            return None

        now = self._clock()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self._key("leases"), {queue_job_id: now + lease_seconds})
            pipe.hset(
                self._job_key(queue_job_id),
                mapping={"state": "active", "worker_id": worker_id, "reserved_at": now},
            )
            await pipe.execute()

        job = await self.get(queue_job_id)
        if job is None:
            logger.warning("Queue job %s has no payload; dropping it", queue_job_id)
            await self._release(queue_job_id)
            await self.redis.delete(self._job_key(queue_job_id))
        return job

    async def get(self, queue_job_id: str) -> QueueJob | None:
        raw = await self.redis.hgetall(self._job_key(queue_job_id))
        if not raw or "data" not in raw:
            return None
        return _to_queue_job(raw)

    async def state(self, queue_job_id: str) -> str | None:
        return await self.redis.hget(self._job_key(queue_job_id), "state")

    async def extend_lease(self, queue_job_id: str, *, lease_seconds: float) -> bool:
        """Push the lease expiry forward; False when the job is no longer leased."""

        leases = self._key("leases")
        if await self.redis.zscore(leases, queue_job_id) is None:
            return False
        await self.redis.zadd(leases, {queue_job_id: self._clock() + lease_seconds}, xx=True)
        return True

    async def complete(self, job: QueueJob, result: dict[str, Any] | None = None) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.zrem(self._key("leases"), job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "state": "completed",
                    "result": json.dumps(result or {}),
                    "finished_at": self._clock(),
                },
            )
            pipe.lpush(self._key("completed"), job.id)
            await pipe.execute()
        await self._trim_history("completed", self.keep_completed)

    async def retry(self, job: QueueJob, *, delay_seconds: float, error: str) -> None:
        """Count the attempt and schedule redelivery after ``delay_seconds``."""

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.zrem(self._key("leases"), job.id)
            pipe.hincrby(self._job_key(job.id), "attempts_made", 1)
            pipe.hset(self._job_key(job.id), mapping={"state": "delayed", "last_error": error})
            pipe.zadd(self._key("delayed"), {job.id: self._clock() + max(0.0, delay_seconds)})
            await pipe.execute()
        logger.info(
            "Queue job %s scheduled for retry in %.1fs (attempt %s/%s)",
            job.id,
            delay_seconds,
            job.attempts_made + 1,
            job.max_attempts,
        )

    async def fail(self, job: QueueJob, *, error: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.zrem(self._key("leases"), job.id)
            pipe.hincrby(self._job_key(job.id), "attempts_made", 1)
            pipe.hset(
                self._job_key(job.id),
                mapping={"state": "failed", "last_error": error, "finished_at": self._clock()},
            )
            pipe.lpush(self._key("failed"), job.id)
            await pipe.execute()
        await self._trim_history("failed", self.keep_failed)

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff elapsed back to ``waiting``."""

        due = await self.redis.zrangebyscore(self._key("delayed"), "-inf", self._clock())
        promoted = 0
        for queue_job_id in due:
            if not await self.redis.zrem(self._key("delayed"), queue_job_id):
                continue
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.rpush(self._key("waiting"), queue_job_id)
                pipe.hset(self._job_key(queue_job_id), "state", "waiting")
                await pipe.execute()
            promoted += 1
        return promoted

    async def recover_stalled(self) -> StalledJobs:
        """Requeue active jobs whose lease expired; fail those past ``max_stalled``."""

        expired = await self.redis.zrangebyscore(self._key("leases"), "-inf", self._clock())
        stalled = StalledJobs()
        for queue_job_id in expired:
            if not await self.redis.zrem(self._key("leases"), queue_job_id):
                continue
            stalled_count = await self.redis.hincrby(self._job_key(queue_job_id), "stalled_count", 1)
            job = await self.get(queue_job_id)
            if job is None:
                logger.warning("Stalled queue job %s has no payload; dropping it", queue_job_id)
                await self._release(queue_job_id)
                await self.redis.delete(self._job_key(queue_job_id))
                continue
            if stalled_count > self.max_stalled:
                await self.fail(job, error=f"{ErrorKind.INTERNAL.value}: {STALLED_LIMIT_MESSAGE}")
                logger.error(
                    "Queue job %s stalled %s time(s), more than the limit of %s; failed",
                    queue_job_id,
                    stalled_count,
                    self.max_stalled,
                )
                stalled.failed.append(job)
                continue
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 0, queue_job_id)
                pipe.hset(self._job_key(queue_job_id), "state", "waiting")
                pipe.rpush(self._key("waiting"), queue_job_id)
                await pipe.execute()
            logger.warning("Queue job %s stalled; lease expired, requeued", queue_job_id)
            stalled.requeued.append(queue_job_id)
        return stalled
    async def counts(self) -> QueueCounts:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("waiting"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.llen(self._key("completed"))
            pipe.llen(self._key("failed"))
            waiting, active, delayed, completed, failed = await pipe.execute()
        return QueueCounts(
            waiting=int(waiting),
            active=int(active),
            delayed=int(delayed),
            completed=int(completed),
            failed=int(failed),
        )

    async def _release(self, queue_job_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, queue_job_id)
            pipe.zrem(self._key("leases"), queue_job_id)
            await pipe.execute()

    async def _trim_history(self, suffix: str, keep: int) -> None:
        key = self._key(suffix)
        stale = await self.redis.lrange(key, max(0, keep), -1)
        if not stale:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(*(self._job_key(queue_job_id) for queue_job_id in stale))
            if keep > 0:
                pipe.ltrim(key, 0, keep - 1)
            else:
                pipe.delete(key)
            await pipe.execute()


def _to_queue_job(raw: dict[str, str]) -> QueueJob:
    return QueueJob(
        id=raw["id"],
        data=AnalysisJobData.from_dict(json.loads(raw["data"])),
        attempts_made=int(raw.get("attempts_made", 0)),
        max_attempts=int(raw.get("max_attempts", 1)),
        backoff_base_seconds=float(raw.get("backoff_base", 0.0)),
    )
