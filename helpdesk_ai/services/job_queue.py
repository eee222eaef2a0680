"""Durable at-least-once work queue for classification and draft jobs.

Job ids are deterministic (``classify-<message_id>``, ``draft-<message_id>``)
so enqueuing a job that is already queued or running is a no-op. A reserved
job stays in a processing list until it is acknowledged, retried or failed;
``recover`` puts jobs orphaned by a crashed worker back on the ready list.
"""

import redis.asyncio as redis
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Protocol, Set, Tuple
import logging
import time

from config.settings import settings
from helpdesk_ai.models.schemas import Job, JobKind, JobStatus

logger = logging.getLogger(__name__)

JOB_PRIORITIES = {
    JobKind.CLASSIFICATION: 1,
    JobKind.DRAFT: 2,
}


def job_id_for(kind: JobKind, message_id: str) -> str:
    prefix = "classify" if kind == JobKind.CLASSIFICATION else "draft"
    return f"{prefix}-{message_id}"


def build_job(kind: JobKind, message_id: str) -> Job:
    return Job(
        id=job_id_for(kind, message_id),
        kind=kind,
        message_id=message_id,
        priority=JOB_PRIORITIES[kind]
    )


class JobQueue(Protocol):
    async def enqueue(self, job: Job) -> bool: ...

    async def reserve(self, kind: JobKind) -> Optional[Job]: ...

    async def ack(self, job: Job) -> None: ...

    async def retry_later(self, job: Job, delay_seconds: float,
                          error: str) -> None: ...

    async def fail(self, job: Job, error: str) -> None: ...

    async def recover(self) -> int: ...

    async def get_job(self, job_id: str) -> Optional[Job]: ...

    async def failed_jobs(self) -> List[Job]: ...


class InMemoryJobQueue:
    """Single-process queue with the same semantics as the Redis backend"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._ready: Dict[JobKind, Deque[str]] = {k: deque() for k in JobKind}
        self._delayed: Dict[JobKind, List[Tuple[float, str]]] = {k: [] for k in JobKind}
        self._processing: Set[str] = set()
        self._jobs: Dict[str, Job] = {}
        self._failed: Dict[str, Job] = {}

    async def enqueue(self, job: Job) -> bool:
        if job.id in self._jobs:
            logger.debug("Job %s already queued, skipping", job.id)
            return False
        self._failed.pop(job.id, None)
        self._jobs[job.id] = job.model_copy(update={"status": JobStatus.QUEUED})
        self._ready[job.kind].append(job.id)
        return True

    def _promote_due(self, kind: JobKind) -> None:
        now = self.clock()
        due = [entry for entry in self._delayed[kind] if entry[0] <= now]
        if not due:
            return
        self._delayed[kind] = [e for e in self._delayed[kind] if e[0] > now]
        for _, job_id in sorted(due):
            self._ready[kind].append(job_id)

    async def reserve(self, kind: JobKind) -> Optional[Job]:
        self._promote_due(kind)
        if not self._ready[kind]:
            return None
        job_id = self._ready[kind].popleft()
        self._processing.add(job_id)
        job = self._jobs[job_id]
        job.status = JobStatus.ACTIVE
        return job.model_copy()

    async def ack(self, job: Job) -> None:
        self._processing.discard(job.id)
        self._jobs.pop(job.id, None)

    async def retry_later(self, job: Job, delay_seconds: float,
                          error: str) -> None:
        self._processing.discard(job.id)
        self._jobs[job.id] = job.model_copy(
            update={"status": JobStatus.QUEUED, "last_error": error}
        )
        self._delayed[job.kind].append((self.clock() + delay_seconds, job.id))

    async def fail(self, job: Job, error: str) -> None:
        self._processing.discard(job.id)
        self._jobs.pop(job.id, None)
        self._failed[job.id] = job.model_copy(
            update={"status": JobStatus.FAILED, "last_error": error}
        )

    async def recover(self) -> int:
        recovered = 0
        for job_id in sorted(self._processing):
            job = self._jobs.get(job_id)
            if job is None:
                continue
            job.status = JobStatus.QUEUED
            self._ready[job.kind].appendleft(job_id)
            recovered += 1
        self._processing.clear()
        return recovered

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id) or self._failed.get(job_id)
        return job.model_copy() if job else None

    async def failed_jobs(self) -> List[Job]:
        return [j.model_copy() for j in self._failed.values()]

    def pending_count(self, kind: JobKind) -> int:
        return len(self._ready[kind]) + len(self._delayed[kind])


class RedisJobQueue:
    """
    Reliable queue on Redis.

    Keys per job kind: ``<prefix>:<kind>:ready`` (list),
    ``<prefix>:<kind>:delayed`` (sorted set scored by due time) and
    ``<prefix>:<kind>:processing`` (list). Job bodies live in the
    ``<prefix>:jobs`` hash; failed jobs move to ``<prefix>:failed``.
    """

    def __init__(self,
                 redis_url: Optional[str] = None,
                 prefix: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.prefix = prefix or settings.REDIS_KEY_PREFIX
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        try:
            self.client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.client.ping()
            logger.info("Connected to Redis job queue")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()

    async def _client(self) -> redis.Redis:
        if not self.client:
            await self.connect()
        return self.client

    def _key(self, kind: JobKind, name: str) -> str:
        return f"{self.prefix}:{kind.value}:{name}"

    @property
    def _jobs_key(self) -> str:
        return f"{self.prefix}:jobs"

    @property
    def _failed_key(self) -> str:
        return f"{self.prefix}:failed"

    async def enqueue(self, job: Job) -> bool:
        client = await self._client()
        queued = job.model_copy(update={"status": JobStatus.QUEUED})
        created = await client.hsetnx(self._jobs_key, job.id,
                                      queued.model_dump_json())
        if not created:
            logger.debug("Job %s already queued, skipping", job.id)
            return False
        await client.hdel(self._failed_key, job.id)
        await client.rpush(self._key(job.kind, "ready"), job.id)
        return True

    async def _promote_due(self, client: redis.Redis, kind: JobKind) -> None:
        delayed_key = self._key(kind, "delayed")
        due = await client.zrangebyscore(delayed_key, "-inf", time.time())
        for job_id in due:
            # Only the worker whose ZREM succeeds moves the job
            if await client.zrem(delayed_key, job_id):
                await client.rpush(self._key(kind, "ready"), job_id)

    async def reserve(self, kind: JobKind) -> Optional[Job]:
        client = await self._client()
        await self._promote_due(client, kind)
        job_id = await client.lmove(self._key(kind, "ready"),
                                    self._key(kind, "processing"),
                                    "LEFT", "RIGHT")
        if job_id is None:
            return None
        raw = await client.hget(self._jobs_key, job_id)
        if raw is None:
            await client.lrem(self._key(kind, "processing"), 0, job_id)
            return None
        job = Job.model_validate_json(raw)
        job.status = JobStatus.ACTIVE
        await client.hset(self._jobs_key, job.id, job.model_dump_json())
        return job

    async def ack(self, job: Job) -> None:
        client = await self._client()
        await client.lrem(self._key(job.kind, "processing"), 0, job.id)
        await client.hdel(self._jobs_key, job.id)

    async def retry_later(self, job: Job, delay_seconds: float,
                          error: str) -> None:
        client = await self._client()
        queued = job.model_copy(
            update={"status": JobStatus.QUEUED, "last_error": error}
        )
        await client.hset(self._jobs_key, job.id, queued.model_dump_json())
        await client.zadd(self._key(job.kind, "delayed"),
                          {job.id: time.time() + delay_seconds})
        await client.lrem(self._key(job.kind, "processing"), 0, job.id)

    async def fail(self, job: Job, error: str) -> None:
        client = await self._client()
        failed = job.model_copy(
            update={"status": JobStatus.FAILED, "last_error": error}
        )
        await client.hset(self._failed_key, job.id, failed.model_dump_json())
        await client.hdel(self._jobs_key, job.id)
        await client.lrem(self._key(job.kind, "processing"), 0, job.id)

    async def recover(self) -> int:
        client = await self._client()
        recovered = 0
        for kind in JobKind:
            while await client.lmove(self._key(kind, "processing"),
                                     self._key(kind, "ready"),
                                     "RIGHT", "LEFT"):
                recovered += 1
        if recovered:
            logger.warning("Recovered %d unacknowledged jobs", recovered)
        return recovered

    async def get_job(self, job_id: str) -> Optional[Job]:
        client = await self._client()
        raw = await client.hget(self._jobs_key, job_id)
        if raw is None:
            raw = await client.hget(self._failed_key, job_id)
        return Job.model_validate_json(raw) if raw else None

    async def failed_jobs(self) -> List[Job]:
        client = await self._client()
        raw_jobs = await client.hvals(self._failed_key)
        return [Job.model_validate_json(raw) for raw in raw_jobs]
