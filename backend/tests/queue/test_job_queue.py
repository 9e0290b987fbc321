"""Tests for JobQueue: ordering, atomic claims, completion bookkeeping and the stale sweep."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from app.core.exceptions import NotFoundError
from app.core.retry import RetryPolicy
from app.db.models.job import Job
from app.queue.manager import JobQueue
from app.queue.schemas import JobStatus, JobType
from app.services.alerting import AlertType
from tests.factories import alerts_of_type, fetch

pytestmark = pytest.mark.integration

NO_BACKOFF = RetryPolicy(name="test_backoff", max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@pytest.fixture
def queue(session_factory, alerts):
    return JobQueue(session_factory, alerts=alerts, backoff=NO_BACKOFF)


# =============================================================================
# CLAIM ORDERING
# =============================================================================


@pytest.mark.asyncio
async def test_claim_returns_none_on_empty_queue(queue):
    assert await queue.claim_next_job() is None


@pytest.mark.asyncio
async def test_claim_prefers_priority_then_age(queue):
    """Highest priority first; equal priorities in enqueue order."""
    low = await queue.enqueue(JobType.SEND_NOTIFICATION, {"n": 1}, priority=1)
    first_high = await queue.enqueue(JobType.REVERSE_COMMISSIONS, {"n": 2}, priority=10)
    second_high = await queue.enqueue(JobType.REVERSE_COMMISSIONS, {"n": 3}, priority=10)

    claimed = [(await queue.claim_next_job()).id for _ in range(3)]

    assert claimed == [first_high, second_high, low]
    assert await queue.claim_next_job() is None


@pytest.mark.asyncio
async def test_claim_marks_job_processing(queue):
    job_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {})

    job = await queue.claim_next_job()

    assert job.id == job_id
    assert job.status == JobStatus.PROCESSING.value
    assert job.started_at is not None
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_future_jobs_are_not_claimable(queue):
    await queue.enqueue(JobType.SYNC_ANALYTICS, {}, scheduled_at=datetime.now(UTC) + timedelta(hours=1))

    assert await queue.claim_next_job() is None


@pytest.mark.asyncio
async def test_claim_filters_by_job_type(queue):
    await queue.enqueue(JobType.SEND_NOTIFICATION, {}, priority=10)
    wanted = await queue.enqueue(JobType.PROCESS_WEBHOOK, {}, priority=1)

    job = await queue.claim_next_job([JobType.PROCESS_WEBHOOK])

    assert job.id == wanted


@pytest.mark.asyncio
async def test_concurrent_claims_never_hand_out_a_job_twice(queue):
    """Racing claimers each get a distinct job and together drain the queue."""
    enqueued = {await queue.enqueue(JobType.SEND_NOTIFICATION, {"n": n}) for n in range(6)}

    claimed = await asyncio.gather(*(queue.claim_next_job() for _ in range(6)))
    claimed_ids = [job.id for job in claimed if job is not None]
    # Claims that lost every race come back empty; pick up the rest sequentially
    while (job := await queue.claim_next_job()) is not None:
        claimed_ids.append(job.id)

    assert len(claimed_ids) == len(set(claimed_ids))
    assert set(claimed_ids) == enqueued


@pytest.mark.asyncio
async def test_enqueue_inside_caller_transaction_is_invisible_until_commit(queue, session_factory):
    async with session_factory() as session:
        await queue.enqueue(JobType.SYNC_ANALYTICS, {}, session=session)
        await session.rollback()

    assert await queue.claim_next_job() is None


# =============================================================================
# COMPLETION
# =============================================================================


@pytest.mark.asyncio
async def test_success_completes_job(queue):
    job_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {})
    await queue.claim_next_job()

    status = await queue.complete_job(job_id, success=True)

    job = await queue.get_job(job_id)
    assert status == JobStatus.COMPLETED
    assert job.status == "completed"
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_failure_below_max_attempts_is_rescheduled(session_factory, alerts):
    slow_backoff = RetryPolicy(name="slow", max_attempts=3, base_delay=60.0, max_delay=600.0, jitter=0.0)
    queue = JobQueue(session_factory, alerts=alerts, backoff=slow_backoff)
    job_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {})
    await queue.claim_next_job()
    before = datetime.now(UTC)

    status = await queue.complete_job(job_id, success=False, error="boom")

    job = await queue.get_job(job_id)
    assert status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.last_error == "boom"
    assert job.started_at is None
    assert _aware(job.scheduled_at) >= before + timedelta(seconds=59)
    # Backoff keeps it out of reach for now
    assert await queue.claim_next_job() is None


@pytest.mark.asyncio
async def test_final_failure_marks_failed_and_alerts(queue, session_factory):
    job_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {}, max_attempts=2)

    for _ in range(2):
        claimed = await queue.claim_next_job()
        assert claimed.id == job_id
        status = await queue.complete_job(job_id, success=False, error="still broken")

    job = await queue.get_job(job_id)
    assert status == JobStatus.FAILED
    assert job.attempts == 2
    assert job.completed_at is not None

    alerts = await alerts_of_type(session_factory, AlertType.JOB_FAILED)
    assert len(alerts) == 1
    assert alerts[0].severity == "error"
    assert alerts[0].context["job_id"] == str(job_id)


@pytest.mark.asyncio
async def test_non_retryable_failure_fails_on_first_attempt(queue):
    job_id = await queue.enqueue(JobType.DISTRIBUTE_COMMISSIONS, {"order_id": "x"})
    await queue.claim_next_job()

    status = await queue.complete_job(job_id, success=False, error="bad input", retryable=False)

    assert status == JobStatus.FAILED
    assert (await queue.get_job(job_id)).attempts == 1


@pytest.mark.asyncio
async def test_completion_of_job_not_in_processing_is_ignored(queue):
    job_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {})

    status = await queue.complete_job(job_id, success=True)

    assert status == JobStatus.PENDING
    assert (await queue.get_job(job_id)).completed_at is None


@pytest.mark.asyncio
async def test_completing_unknown_job_raises(queue):
    with pytest.raises(NotFoundError):
        await queue.complete_job(uuid.uuid4(), success=True)


@pytest.mark.asyncio
async def test_defer_returns_job_without_consuming_an_attempt(queue):
    job_id = await queue.enqueue(JobType.PROCESS_WEBHOOK, {"event_id": "evt_1"})
    await queue.claim_next_job()

    assert await queue.defer_job(job_id, 30, "waiting on evt_0") is True

    job = await queue.get_job(job_id)
    assert job.status == "pending"
    assert job.attempts == 0
    assert job.last_error == "waiting on evt_0"
    assert await queue.claim_next_job() is None

    # Only processing jobs can be deferred
    assert await queue.defer_job(job_id, 30, "again") is False


# =============================================================================
# STALE SWEEP AND STATS
# =============================================================================


@pytest.mark.asyncio
async def test_reset_stale_jobs_returns_orphans_to_pending(queue, session_factory):
    stale_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {}, priority=5)
    fresh_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {}, priority=1)
    await queue.claim_next_job()
    await queue.claim_next_job()

    async with session_factory() as session:
        await session.execute(
            update(Job)
            .where(Job.id == stale_id)
            .values(started_at=datetime.now(UTC) - timedelta(hours=2))
        )
        await session.commit()

    assert await queue.reset_stale_jobs(threshold_minutes=30) == 1

    stale = await fetch(session_factory, Job, stale_id)
    fresh = await fetch(session_factory, Job, fresh_id)
    assert stale.status == "pending"
    assert stale.attempts == 0
    assert "Reset after 30 minutes" in stale.last_error
    assert fresh.status == "processing"


@pytest.mark.asyncio
async def test_stats_and_failure_count(queue):
    failed_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {}, priority=9)
    done_id = await queue.enqueue(JobType.SYNC_ANALYTICS, {}, priority=8)
    await queue.enqueue(JobType.SYNC_ANALYTICS, {}, priority=1)

    await queue.claim_next_job()
    await queue.complete_job(failed_id, success=False, error="x", retryable=False)
    await queue.claim_next_job()
    await queue.complete_job(done_id, success=True)

    stats = await queue.stats()
    assert stats.pending == 1
    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.processing == 0

    assert await queue.count_failed_since(datetime.now(UTC) - timedelta(hours=1)) == 1
    assert await queue.count_failed_since(datetime.now(UTC) + timedelta(minutes=1)) == 0
