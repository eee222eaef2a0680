"""Unit tests for the in-memory job queue."""

import pytest

from helpdesk_ai.models.schemas import JobKind, JobStatus
from helpdesk_ai.services.job_queue import InMemoryJobQueue, build_job, job_id_for


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(clock=clock)


class TestJobQueue:

    def test_deterministic_job_ids(self):
        assert job_id_for(JobKind.CLASSIFICATION, "msg-1") == "classify-msg-1"
        assert job_id_for(JobKind.DRAFT, "msg-1") == "draft-msg-1"
        assert build_job(JobKind.CLASSIFICATION, "m").priority < \
            build_job(JobKind.DRAFT, "m").priority

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_is_noop(self, queue):
        assert await queue.enqueue(build_job(JobKind.CLASSIFICATION, "msg-1")) is True
        assert await queue.enqueue(build_job(JobKind.CLASSIFICATION, "msg-1")) is False
        assert queue.pending_count(JobKind.CLASSIFICATION) == 1

    @pytest.mark.asyncio
    async def test_reserve_and_ack(self, queue):
        await queue.enqueue(build_job(JobKind.DRAFT, "msg-1"))

        job = await queue.reserve(JobKind.DRAFT)
        assert job.id == "draft-msg-1"
        assert job.status == JobStatus.ACTIVE
        assert await queue.reserve(JobKind.DRAFT) is None

        await queue.ack(job)
        assert await queue.get_job(job.id) is None
        # Finished jobs can be queued again
        assert await queue.enqueue(build_job(JobKind.DRAFT, "msg-1")) is True

    @pytest.mark.asyncio
    async def test_active_job_blocks_duplicate(self, queue):
        await queue.enqueue(build_job(JobKind.CLASSIFICATION, "msg-1"))
        await queue.reserve(JobKind.CLASSIFICATION)

        assert await queue.enqueue(build_job(JobKind.CLASSIFICATION, "msg-1")) is False

    @pytest.mark.asyncio
    async def test_retry_waits_for_delay(self, queue, clock):
        await queue.enqueue(build_job(JobKind.CLASSIFICATION, "msg-1"))
        job = await queue.reserve(JobKind.CLASSIFICATION)
        job.attempts = 1

        await queue.retry_later(job, 2.0, "boom")

        assert await queue.reserve(JobKind.CLASSIFICATION) is None
        clock.now += 2.0
        retried = await queue.reserve(JobKind.CLASSIFICATION)
        assert retried.id == job.id
        assert retried.attempts == 1
        assert retried.last_error == "boom"

    @pytest.mark.asyncio
    async def test_fail_keeps_job_for_inspection(self, queue):
        await queue.enqueue(build_job(JobKind.DRAFT, "msg-1"))
        job = await queue.reserve(JobKind.DRAFT)

        await queue.fail(job, "gave up")

        failed = await queue.failed_jobs()
        assert [j.id for j in failed] == ["draft-msg-1"]
        assert failed[0].status == JobStatus.FAILED
        assert (await queue.get_job("draft-msg-1")).last_error == "gave up"

    @pytest.mark.asyncio
    async def test_recover_requeues_unacknowledged(self, queue):
        await queue.enqueue(build_job(JobKind.CLASSIFICATION, "msg-1"))
        await queue.reserve(JobKind.CLASSIFICATION)

        assert await queue.recover() == 1
        job = await queue.reserve(JobKind.CLASSIFICATION)
        assert job.id == "classify-msg-1"
