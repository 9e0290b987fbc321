"""JobQueue: durable priority queue on the job_queue table with atomic claiming."""

import uuid
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import NotFoundError
from app.core.retry import DB_RETRY, JOB_BACKOFF, RetryPolicy
from app.db.models.job import Job
from app.queue.schemas import JobStatus, JobType, QueueStats
from app.services.alerting import AlertSeverity, AlertSink, AlertType

logger = structlog.get_logger(__name__)

_MAX_ERROR_LENGTH = 4000


class JobQueue:
    """Relational work-item store. Jobs are never deleted, only transitioned.

    Ordering is priority (desc) then age; jobs whose ``scheduled_at`` lies in
    the future (retry backoff, deferred dependencies) are not eligible yet.
    """

    # Claim attempts per call when another worker wins the conditional update
    MAX_CLAIM_RACES = 5

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: AlertSink | None = None,
        db_retry: RetryPolicy = DB_RETRY,
        backoff: RetryPolicy = JOB_BACKOFF,
        default_max_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._alerts = alerts
        self._db_retry = db_retry
        self._backoff = backoff
        self._default_max_attempts = default_max_attempts

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict,
        priority: int = 0,
        max_attempts: int | None = None,
        scheduled_at: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> uuid.UUID:
        """Insert a pending job.

        When ``session`` is given the job joins the caller's transaction (and
        is only visible once the caller commits); otherwise it is committed
        immediately.
        """
        now = datetime.now(UTC)
        job = Job(
            id=uuid.uuid4(),
            job_type=job_type.value,
            payload=payload,
            priority=priority,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self._default_max_attempts,
            scheduled_at=scheduled_at or now,
            created_at=now,
        )
        if session is not None:
            session.add(job)
            await session.flush()
        else:
            async with self._session_factory() as own_session:
                own_session.add(job)
                await own_session.commit()

        logger.info("job_enqueued", job_id=str(job.id), job_type=job_type.value, priority=priority)
        return job.id

    async def claim_next_job(self, job_types: list[JobType] | None = None) -> Job | None:
        """Atomically move the most urgent eligible job to processing.

        Returns None when nothing is eligible (not an error).
        """
        return await self._db_retry.call(self._claim, job_types)

    async def _claim(self, job_types: list[JobType] | None) -> Job | None:
        type_values = [t.value for t in job_types] if job_types else None

        for _ in range(self.MAX_CLAIM_RACES):
            now = datetime.now(UTC)
            async with self._session_factory() as session:
                stmt = select(Job.id).where(
                    Job.status == JobStatus.PENDING.value,
                    Job.scheduled_at <= now,
                )
                if type_values:
                    stmt = stmt.where(Job.job_type.in_(type_values))
                stmt = (
                    stmt.order_by(Job.priority.desc(), Job.created_at.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                job_id = (await session.execute(stmt)).scalar_one_or_none()
                if job_id is None:
                    return None

                # Conditional update: only one worker can move this row out of pending
                result = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                    .values(status=JobStatus.PROCESSING.value, started_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    logger.debug("job_claim_race_lost", job_id=str(job_id))
                    continue

                await session.commit()
                job = await session.get(Job, job_id)
                logger.info(
                    "job_claimed",
                    job_id=str(job_id),
                    job_type=job.job_type,
                    priority=job.priority,
                    attempts=job.attempts,
                )
                return job

        logger.warning("job_claim_contention", races=self.MAX_CLAIM_RACES)
        return None

    async def complete_job(
        self,
        job_id: uuid.UUID,
        success: bool,
        error: str | None = None,
        retryable: bool = True,
    ) -> JobStatus:
        """Record the outcome of a processing job.

        Failure increments attempts; below max_attempts (and retryable) the job
        goes back to pending after a backoff delay, otherwise it is failed and
        an alert is raised. Returns the resulting status.
        """
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            job = await session.get(Job, job_id, with_for_update=True)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")

            if job.status != JobStatus.PROCESSING.value:
                # Reset by the stale sweep (or already finished) while this worker ran
                logger.warning("job_completion_ignored", job_id=str(job_id), status=job.status, success=success)
                return JobStatus(job.status)

            if success:
                job.status = JobStatus.COMPLETED.value
                job.completed_at = now
            else:
                job.attempts += 1
                job.last_error = (error or "Unknown error")[:_MAX_ERROR_LENGTH]
                if retryable and job.attempts < job.max_attempts:
                    job.status = JobStatus.PENDING.value
                    job.started_at = None
                    job.scheduled_at = now + timedelta(seconds=self._backoff.delay_for(job.attempts))
                else:
                    job.status = JobStatus.FAILED.value
                    job.completed_at = now

            status = JobStatus(job.status)
            job_type = job.job_type
            attempts = job.attempts
            max_attempts = job.max_attempts
            await session.commit()

        if status == JobStatus.COMPLETED:
            logger.info("job_completed", job_id=str(job_id), job_type=job_type)
        elif status == JobStatus.PENDING:
            logger.warning(
                "job_retry_scheduled",
                job_id=str(job_id),
                job_type=job_type,
                attempts=attempts,
                max_attempts=max_attempts,
                error=error,
            )
        else:
            logger.error("job_failed_permanently", job_id=str(job_id), job_type=job_type, attempts=attempts, error=error)
            if self._alerts is not None:
                await self._alerts.send(
                    AlertType.JOB_FAILED,
                    AlertSeverity.ERROR,
                    f"Job {job_type} failed",
                    error or "Unknown error",
                    {"job_id": str(job_id), "job_type": job_type, "attempts": attempts, "retryable": retryable},
                )
        return status

    async def defer_job(self, job_id: uuid.UUID, delay_seconds: float, reason: str) -> bool:
        """Put a processing job back to pending without consuming an attempt."""
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    scheduled_at=now + timedelta(seconds=delay_seconds),
                    last_error=reason[:_MAX_ERROR_LENGTH],
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        deferred = result.rowcount == 1
        logger.info("job_deferred", job_id=str(job_id), delay_seconds=delay_seconds, reason=reason, applied=deferred)
        return deferred

    async def reset_stale_jobs(self, threshold_minutes: int) -> int:
        """Return jobs stuck in processing longer than the threshold to pending.

        The worker holding them is presumed dead. Returns the number reset.
        """
        now = datetime.now(UTC)
        cutoff = now - timedelta(minutes=threshold_minutes)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(Job.status == JobStatus.PROCESSING.value, Job.started_at < cutoff)
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    last_error=f"Reset after {threshold_minutes} minutes in processing",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("stale_jobs_reset", count=result.rowcount, threshold_minutes=threshold_minutes)
        return result.rowcount

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        async with self._session_factory() as session:
            return await session.get(Job, job_id)

    async def count_failed_since(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(Job.id)).where(
                    Job.status == JobStatus.FAILED.value,
                    Job.completed_at >= cutoff,
                )
            )
            return result.scalar_one()

    async def stats(self) -> QueueStats:
        async with self._session_factory() as session:
            result = await session.execute(select(Job.status, func.count(Job.id)).group_by(Job.status))
            return QueueStats(**{status: count for status, count in result.all()})
