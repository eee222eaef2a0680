"""Worker pool that drains the job queue.

Each job kind has its own concurrency and rate budget so draft generation
can never starve classification. Classification is polled first in every
cycle. Failures are sorted by the error taxonomy:

- referential errors acknowledge the job as a no-op;
- rate limits requeue with backoff without spending an attempt;
- malformed output fails the job immediately;
- everything else spends an attempt and is retried with exponential backoff
  until ``JOB_MAX_ATTEMPTS``, then fails.
"""

from typing import Awaitable, Callable, Dict, Optional, Set
import asyncio
import logging
import time

from config.settings import settings
from helpdesk_ai.exceptions import (
    LLMMalformedResponseError, LLMRateLimitError, ReferenceNotFoundError
)
from helpdesk_ai.models.schemas import Job, JobKind, JobStatus
from helpdesk_ai.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[str], Awaitable[object]]

MAX_BACKOFF_SECONDS = 60.0


class RateLimiter:
    """Spaces job starts so at most ``rate`` begin per second"""

    def __init__(self, rate: float):
        self.interval = 1.0 / rate if rate > 0 else 0.0
        self._next_start = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        if self.interval == 0:
            return
        async with self._lock:
            now = time.monotonic()
            delay = self._next_start - now
            self._next_start = max(now, self._next_start) + self.interval
        if delay > 0:
            await asyncio.sleep(delay)


class JobRunner:
    """Pulls jobs off the queue and dispatches them to their handlers"""

    def __init__(self,
                 queue: JobQueue,
                 handlers: Dict[JobKind, JobHandler],
                 max_attempts: Optional[int] = None,
                 backoff_seconds: Optional[float] = None,
                 max_rate_limit_requeues: Optional[int] = None,
                 poll_interval: Optional[float] = None):
        self.queue = queue
        self.handlers = handlers
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        self.backoff_seconds = (settings.JOB_BACKOFF_SECONDS
                                if backoff_seconds is None else backoff_seconds)
        self.max_rate_limit_requeues = (max_rate_limit_requeues
                                        or settings.JOB_MAX_RATE_LIMIT_REQUEUES)
        self.poll_interval = poll_interval or settings.JOB_POLL_INTERVAL_SECONDS

        self._semaphores = {
            JobKind.CLASSIFICATION: asyncio.Semaphore(settings.CLASSIFICATION_CONCURRENCY),
            JobKind.DRAFT: asyncio.Semaphore(settings.DRAFT_CONCURRENCY),
        }
        self._limiters = {
            JobKind.CLASSIFICATION: RateLimiter(settings.CLASSIFICATION_RATE_PER_SECOND),
            JobKind.DRAFT: RateLimiter(settings.DRAFT_RATE_PER_SECOND),
        }
        self._tasks: Set[asyncio.Task] = set()

    def _backoff(self, n: int) -> float:
        return min(self.backoff_seconds * (2 ** max(n - 1, 0)),
                   MAX_BACKOFF_SECONDS)

    async def process_job(self, job: Job) -> JobStatus:
        """Run one job and settle it on the queue"""
        handler = self.handlers[job.kind]
        try:
            await handler(job.message_id)
        except ReferenceNotFoundError as e:
            logger.info("Job %s skipped: %s", job.id, e)
            await self.queue.ack(job)
            return JobStatus.COMPLETED
        except LLMRateLimitError as e:
            job.rate_limit_requeues += 1
            if job.rate_limit_requeues > self.max_rate_limit_requeues:
                logger.error("Job %s failed: still rate limited after %d requeues",
                             job.id, job.rate_limit_requeues - 1)
                await self.queue.fail(job, str(e))
                return JobStatus.FAILED
            delay = e.retry_after or self._backoff(job.rate_limit_requeues)
            logger.warning("Job %s rate limited, requeued in %.1fs",
                           job.id, delay)
            await self.queue.retry_later(job, delay, str(e))
            return JobStatus.QUEUED
        except LLMMalformedResponseError as e:
            logger.error("Job %s failed on malformed model output: %s",
                         job.id, e)
            await self.queue.fail(job, str(e))
            return JobStatus.FAILED
        except Exception as e:
            job.attempts += 1
            if job.attempts >= self.max_attempts:
                logger.error("Job %s failed after %d attempts: %s",
                             job.id, job.attempts, e, exc_info=True)
                await self.queue.fail(job, str(e))
                return JobStatus.FAILED
            delay = self._backoff(job.attempts)
            logger.warning("Job %s attempt %d failed (%s), retrying in %.1fs",
                           job.id, job.attempts, e, delay)
            await self.queue.retry_later(job, delay, str(e))
            return JobStatus.QUEUED

        await self.queue.ack(job)
        return JobStatus.COMPLETED

    async def _run_with_budget(self, job: Job) -> None:
        try:
            await self._limiters[job.kind].wait()
            await self.process_job(job)
        except Exception:
            # Settling the job itself failed (queue unreachable); the job
            # stays in processing and is recovered on the next start.
            logger.exception("Could not settle job %s", job.id)
        finally:
            self._semaphores[job.kind].release()

    async def run_once(self) -> int:
        """Start as many jobs as the budgets allow; returns how many started"""
        started = 0
        for kind in (JobKind.CLASSIFICATION, JobKind.DRAFT):
            semaphore = self._semaphores[kind]
            while not semaphore.locked():
                job = await self.queue.reserve(kind)
                if job is None:
                    break
                await semaphore.acquire()
                task = asyncio.create_task(self._run_with_budget(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                started += 1
        return started

    async def drain(self) -> None:
        """Process until nothing is ready and nothing is running"""
        while True:
            started = await self.run_once()
            if self._tasks:
                await asyncio.gather(*list(self._tasks))
            elif started == 0:
                return

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        recovered = await self.queue.recover()
        logger.info("Job runner started (%d jobs recovered)", recovered)
        while not stop_event.is_set():
            started = await self.run_once()
            if started == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(),
                                           timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
        logger.info("Job runner stopped")
