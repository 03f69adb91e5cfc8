"""Job execution outcomes, retries, dead-lettering and reclamation."""

import asyncio
import random
import re
from datetime import timedelta

import pytest
from sqlalchemy import update

from filevault.infra.database import utcnow
from filevault.v1.files.models import FileRecord
from filevault.v1.infra.jobs.backoff import RetryPolicy
from filevault.v1.infra.jobs.errors import NonRetryableJobError, RetryableJobError
from filevault.v1.infra.jobs.models import Job, JobStatus, JobType
from filevault.v1.infra.jobs.repository import JobRepository
from filevault.v1.infra.jobs.worker import JobExecutor, JobScheduler, generate_worker_id

WORKER_ID = "test-host-1700000000000"


class RecordingHandler:
    """Handler that marks the file and returns output, or raises ``error``."""

    def __init__(self, job_type: str = "ocr", error: Exception | None = None):
        self.job_type = job_type
        self.error = error
        self.executed: list[int] = []

    def supports(self, job) -> bool:
        return job.job_type == self.job_type

    async def execute(self, session, job):
        self.executed.append(job.id)
        await session.execute(
            update(FileRecord)
            .where(FileRecord.id == job.file_id)
            .values(file_text=f"processed by job {job.id}")
        )
        if self.error is not None:
            raise self.error
        return {"processed": True}


@pytest.fixture
def retry_policy(test_settings) -> RetryPolicy:
    return RetryPolicy(test_settings, rng=random.Random(1))


@pytest.fixture
def executor(test_settings, database, registry, metrics, retry_policy) -> JobExecutor:
    return JobExecutor(
        test_settings,
        database,
        WORKER_ID,
        registry=registry,
        metrics=metrics,
        retry_policy=retry_policy,
    )


async def claim_one(database, job_id: int, worker_id: str = WORKER_ID) -> None:
    async with database.transaction() as session:
        claimed = await JobRepository().claim_job_ids(session, worker_id, 100)
    assert job_id in claimed


async def load_file(database, file_id: int) -> FileRecord:
    async with database.session() as session:
        return await session.get(FileRecord, file_id)


def test_generate_worker_id_format():
    worker_id = generate_worker_id()
    assert re.fullmatch(r".+-\d{13}", worker_id)


async def test_successful_job_is_done(executor, registry, database, make_job, load_job, metrics):
    handler = RecordingHandler()
    registry.register("ocr", handler)
    job = await make_job()
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.DONE.value
    assert stored.output_data == {"processed": True}
    assert stored.completed_at is not None
    assert stored.locked_by is None
    assert stored.locked_at is None
    assert stored.error_message is None
    assert stored.attempts == 1
    assert (await load_file(database, job.file_id)).file_text == f"processed by job {job.id}"
    assert metrics.count("jobs.completed", result="success", type="ocr") == 1
    assert len(metrics.timings["jobs.duration"]) == 1


async def test_failed_job_is_retried_with_backoff(
    executor, registry, database, make_job, load_job, metrics
):
    registry.register("ocr", RecordingHandler(error=RuntimeError("engine crashed")))
    job = await make_job(max_attempts=3)
    await claim_one(database, job.id)
    before = utcnow()

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.PENDING.value
    assert stored.attempts == 1
    assert stored.error_message == "engine crashed"
    assert stored.locked_by is None
    assert stored.locked_at is None
    # attempts=1: 2 minutes +/- 25%
    delay = stored.next_attempt_at - before
    assert timedelta(minutes=1.5) - timedelta(seconds=1) <= delay <= timedelta(minutes=2.5)
    # Handler writes rolled back with the failed attempt
    assert (await load_file(database, job.file_id)).file_text is None
    assert metrics.count("jobs.retried", type="ocr") == 1
    assert metrics.count("jobs.completed", result="failure") == 1


async def test_job_dead_lettered_after_max_attempts(
    executor, registry, database, make_job, load_job, metrics
):
    registry.register("ocr", RecordingHandler(error=RuntimeError("PDF_CORRUPT: bad xref")))
    job = await make_job(attempts=2, max_attempts=3)
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.DLQ.value
    assert stored.attempts == 3
    assert stored.locked_by is None
    assert stored.error_message == "PDF_CORRUPT: PDF_CORRUPT: bad xref"
    output = stored.output_data
    assert output["error_code"] == "PDF_CORRUPT"
    assert output["error_type"] == "RuntimeError"
    assert output["file_id"] == job.file_id
    assert output["job_type"] == "ocr"
    assert output["attempts"] == 3
    assert output["message"] == "PDF_CORRUPT: bad xref"
    assert "timestamp" in output
    assert metrics.count("jobs.dlq", type="ocr") == 1


async def test_retryable_error_still_limited_by_max_attempts(
    test_settings, database, registry, metrics, retry_policy, make_job, load_job
):
    settings = test_settings.model_copy(update={"job_max_attempts": 1})
    executor = JobExecutor(
        settings, database, WORKER_ID, registry=registry, metrics=metrics, retry_policy=retry_policy
    )
    registry.register("ocr", RecordingHandler(error=RetryableJobError("busy")))
    job = await make_job(attempts=0, max_attempts=1)
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.DLQ.value
    assert stored.output_data["error_code"] == "RETRYABLE_ERROR"


async def test_raised_max_attempts_applies_to_queued_jobs(
    test_settings, database, registry, metrics, retry_policy, make_job, load_job
):
    settings = test_settings.model_copy(update={"job_max_attempts": 5})
    executor = JobExecutor(
        settings, database, WORKER_ID, registry=registry, metrics=metrics, retry_policy=retry_policy
    )
    registry.register("ocr", RecordingHandler(error=RuntimeError("engine crashed")))
    job = await make_job(attempts=2, max_attempts=3)
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.PENDING.value
    assert stored.attempts == 3
    assert stored.max_attempts == 5


async def test_lowered_max_attempts_applies_to_queued_jobs(
    test_settings, database, registry, metrics, retry_policy, make_job, load_job
):
    settings = test_settings.model_copy(update={"job_max_attempts": 2})
    executor = JobExecutor(
        settings, database, WORKER_ID, registry=registry, metrics=metrics, retry_policy=retry_policy
    )
    registry.register("ocr", RecordingHandler(error=RuntimeError("engine crashed")))
    job = await make_job(attempts=1, max_attempts=5)
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.DLQ.value
    assert stored.attempts == 2
    assert stored.max_attempts == 2


async def test_non_retryable_error_skips_remaining_attempts(
    executor, registry, database, make_job, load_job
):
    error = NonRetryableJobError("object missing", error_code="S3_NOT_FOUND")
    registry.register("ocr", RecordingHandler(error=error))
    job = await make_job(max_attempts=5)
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.DLQ.value
    assert stored.attempts == 1
    assert stored.error_message == "S3_NOT_FOUND: object missing"
    assert stored.output_data["error_type"] == "NonRetryableJobError"


async def test_job_without_handler_goes_to_dlq(
    executor, registry, database, make_job, load_job, metrics
):
    registry.register("ocr", RecordingHandler())
    job = await make_job(job_type=JobType.SUMMARIZE, max_attempts=3)
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.DLQ.value
    assert stored.attempts == 1
    assert stored.output_data["error_code"] == "NO_HANDLER"
    assert stored.error_message.startswith("NO_HANDLER: ")
    assert metrics.count("jobs.dlq", type="summarize") == 1


async def test_lost_lock_discards_completion(
    executor, registry, database, make_job, load_job, metrics
):
    class ReclaimedMidwayHandler(RecordingHandler):
        async def execute(self, session, job):
            # Another worker reclaims and re-claims the job while this one runs
            async with database.transaction() as other:
                await other.execute(
                    update(Job)
                    .where(Job.id == job.id)
                    .values(locked_by="other-worker", locked_at=utcnow())
                )
            return await super().execute(session, job)

    registry.register("ocr", ReclaimedMidwayHandler())
    job = await make_job()
    await claim_one(database, job.id)

    await executor.execute_job_by_id(job.id)

    stored = await load_job(job.id)
    assert stored.status == JobStatus.RUNNING.value
    assert stored.locked_by == "other-worker"
    assert stored.output_data is None
    assert (await load_file(database, job.file_id)).file_text is None
    assert metrics.count("jobs.completed", result="lost_lock") == 1


async def test_job_not_owned_is_skipped(executor, registry, make_job, load_job):
    handler = RecordingHandler()
    registry.register("ocr", handler)
    job = await make_job(status=JobStatus.RUNNING, locked_by="someone-else", locked_at=utcnow())

    await executor.execute_job_by_id(job.id)

    assert handler.executed == []
    assert (await load_job(job.id)).locked_by == "someone-else"


async def test_missing_job_is_ignored(executor):
    await executor.execute_job_by_id(987654)


@pytest.fixture
def scheduler(test_settings, database, registry, metrics, retry_policy) -> JobScheduler:
    return JobScheduler(
        test_settings,
        database,
        worker_id=WORKER_ID,
        registry=registry,
        metrics=metrics,
        retry_policy=retry_policy,
    )


async def test_poll_jobs_claims_and_executes(scheduler, registry, make_job, load_job, metrics):
    registry.register("ocr", RecordingHandler())
    jobs = [await make_job() for _ in range(3)]

    claimed = await scheduler.poll_jobs()
    await scheduler.dispatcher.join()

    assert claimed == 3
    assert metrics.count("jobs.claimed") == 3
    for job in jobs:
        assert (await load_job(job.id)).status == JobStatus.DONE.value
    await scheduler.dispatcher.shutdown()


async def test_poll_jobs_with_empty_queue(scheduler, metrics):
    assert await scheduler.poll_jobs() == 0
    assert metrics.count("jobs.claimed") == 0


async def test_failing_job_does_not_affect_rest_of_batch(
    scheduler, registry, database, make_job, load_job
):
    good = await make_job()
    bad = await make_job()

    class FailsForOneJob(RecordingHandler):
        async def execute(self, session, job):
            output = await super().execute(session, job)
            if job.id == bad.id:
                raise RuntimeError("engine crashed")
            return output

    registry.register("ocr", FailsForOneJob())

    assert await scheduler.poll_jobs() == 2
    await scheduler.dispatcher.join()

    done = await load_job(good.id)
    assert done.status == JobStatus.DONE.value
    assert (await load_file(database, good.file_id)).file_text == f"processed by job {good.id}"

    retried = await load_job(bad.id)
    assert retried.status == JobStatus.PENDING.value
    assert retried.attempts == 1
    assert retried.next_attempt_at is not None
    assert (await load_file(database, bad.file_id)).file_text is None
    await scheduler.dispatcher.shutdown()


async def test_end_to_end_ocr_then_embed(scheduler, registry, make_file, database, load_job):
    from filevault.v1.infra.jobs.service import JobCreationService

    registry.register("ocr", RecordingHandler("ocr"))
    registry.register("embed", RecordingHandler("embed"))
    file = await make_file()
    created = await JobCreationService(scheduler.settings, database).enqueue_file_processing(
        1, file.id, "application/pdf"
    )

    # First poll runs OCR only; embed waits on it
    assert await scheduler.poll_jobs() == 1
    await scheduler.dispatcher.join()
    assert await scheduler.poll_jobs() == 1
    await scheduler.dispatcher.join()

    assert (await load_job(created["ocr"])).status == JobStatus.DONE.value
    assert (await load_job(created["embed"])).status == JobStatus.DONE.value
    await scheduler.dispatcher.shutdown()


async def test_reclaim_returns_stale_jobs_to_queue(
    scheduler, make_job, load_job, metrics, test_settings
):
    now = utcnow()
    stale = await make_job(
        status=JobStatus.RUNNING,
        attempts=1,
        locked_by="dead-worker",
        locked_at=now - timedelta(seconds=test_settings.job_stale_timeout_s + 60),
    )
    fresh = await make_job(
        status=JobStatus.RUNNING,
        attempts=1,
        locked_by="live-worker",
        locked_at=now - timedelta(seconds=30),
    )

    assert await scheduler.reclaim_stuck_jobs() == 1

    reclaimed = await load_job(stale.id)
    assert reclaimed.status == JobStatus.PENDING.value
    assert reclaimed.locked_by is None
    assert reclaimed.locked_at is None
    assert reclaimed.attempts == 1
    delay = reclaimed.next_attempt_at - now
    assert timedelta(minutes=1.5) <= delay <= timedelta(minutes=2.5) + timedelta(seconds=5)

    untouched = await load_job(fresh.id)
    assert untouched.status == JobStatus.RUNNING.value
    assert untouched.locked_by == "live-worker"
    assert metrics.count("jobs.reclaimed", type="ocr") == 1


async def test_reclaimed_job_is_claimable_again_after_backoff(
    scheduler, database, make_job, load_job, test_settings
):
    job = await make_job(
        status=JobStatus.RUNNING,
        attempts=1,
        locked_by="dead-worker",
        locked_at=utcnow() - timedelta(seconds=test_settings.job_stale_timeout_s + 1),
    )
    await scheduler.reclaim_stuck_jobs()

    later = utcnow() + timedelta(minutes=3)
    async with database.transaction() as session:
        claimed = await JobRepository().claim_job_ids(session, "new-worker", 10, now=later)

    assert claimed == [job.id]
    assert (await load_job(job.id)).attempts == 2


async def test_worker_loop_survives_failing_cycle(scheduler):
    calls = 0

    async def flaky_poll():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database unavailable")
        if calls >= 3:
            scheduler.stop()
        return 0

    scheduler._stop_event = asyncio.Event()
    await asyncio.wait_for(scheduler._run_periodically("poll", flaky_poll, 0.01), timeout=5)

    assert calls == 3


async def test_start_and_stop(scheduler):
    task = asyncio.create_task(scheduler.start())
    await asyncio.sleep(0.05)
    assert scheduler.running

    scheduler.stop()
    await asyncio.wait_for(task, timeout=5)

    assert not scheduler.running
