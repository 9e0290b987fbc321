"""JobWorker: drains the job queue within a job budget and a wall-clock deadline."""

import asyncio
import time

import structlog

from app.core.exceptions import DependencyUnresolvedError, EscrowError, UnknownJobTypeError
from app.db.models.job import Job
from app.metrics.cloudwatch import emit_job_duration
from app.queue.handlers import JobHandlers
from app.queue.manager import JobQueue
from app.queue.schemas import JobResult, JobType, RunJobsResponse
from app.services.alerting import AlertSeverity, AlertSink, AlertType

logger = structlog.get_logger(__name__)


class JobWorker:
    """Claim -> dispatch -> complete loop, invoked per request by a scheduler.

    The deadline is checked before every claim and bounds each running
    handler, so no job is left in ``processing`` once ``run`` returns.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: JobHandlers,
        alerts: AlertSink | None = None,
        default_max_jobs: int = 10,
        max_jobs_cap: int = 50,
        timeout_ms: int = 50_000,
        dependency_defer_seconds: float = 30.0,
    ):
        self._queue = queue
        self._handlers = handlers
        self._alerts = alerts
        self._default_max_jobs = default_max_jobs
        self._max_jobs_cap = max_jobs_cap
        self._timeout_ms = timeout_ms
        self._defer_seconds = dependency_defer_seconds

    async def run(
        self,
        max_jobs: int | None = None,
        timeout_ms: int | None = None,
        job_types: list[JobType] | None = None,
        concurrency: int = 1,
    ) -> RunJobsResponse:
        """Process up to ``max_jobs`` jobs (capped) within ``timeout_ms`` (capped).

        ``concurrency`` executors share the job budget.
        """
        max_jobs = min(max_jobs or self._default_max_jobs, self._max_jobs_cap)
        timeout_ms = min(timeout_ms or self._timeout_ms, self._timeout_ms)

        started = time.monotonic()
        deadline = started + timeout_ms / 1000
        results: list[JobResult] = []
        budget = {"claimed": 0, "timed_out": False, "error": None}

        async def executor() -> None:
            while budget["claimed"] < max_jobs and budget["error"] is None:
                if time.monotonic() >= deadline:
                    budget["timed_out"] = True
                    return
                # Reserve budget before awaiting so executors never over-claim
                budget["claimed"] += 1
                try:
                    job = await self._queue.claim_next_job(job_types)
                    if job is None:
                        budget["claimed"] -= 1
                        return
                    results.append(await self._execute(job, deadline))
                except Exception as exc:
                    # Queue bookkeeping failed; siblings stop claiming, the stale sweep recovers the job
                    budget["error"] = type(exc).__name__
                    logger.error("worker_executor_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
                    return

        await asyncio.gather(*(executor() for _ in range(max(1, concurrency))))

        elapsed_ms = int((time.monotonic() - started) * 1000)
        deferred = sum(1 for r in results if r.deferred)
        successful = sum(1 for r in results if r.success)
        response = RunJobsResponse(
            success=budget["error"] is None,
            error=budget["error"],
            processed=len(results),
            successful=successful,
            failed=len(results) - successful - deferred,
            deferred=deferred,
            total_duration_ms=sum(r.duration_ms for r in results),
            elapsed_ms=elapsed_ms,
            stopped_due_to_timeout=budget["timed_out"],
            results=results,
        )
        logger.info(
            "worker_run_complete",
            processed=response.processed,
            successful=response.successful,
            failed=response.failed,
            deferred=response.deferred,
            elapsed_ms=elapsed_ms,
            stopped_due_to_timeout=response.stopped_due_to_timeout,
            error=response.error,
        )
        return response

    async def _execute(self, job: Job, deadline: float) -> JobResult:
        started = time.monotonic()
        log = logger.bind(job_id=str(job.id), job_type=job.job_type, attempt=job.attempts + 1)
        success = False
        deferred = False
        error: str | None = None

        try:
            await asyncio.wait_for(
                self._handlers.dispatch(job.job_type, job.payload, job.id),
                timeout=max(deadline - started, 0.001),
            )
            await self._queue.complete_job(job.id, success=True)
            success = True
        except DependencyUnresolvedError as exc:
            error = exc.message
            deferred = await self._queue.defer_job(job.id, self._defer_seconds, exc.message)
            if not deferred:
                await self._queue.complete_job(job.id, success=False, error=error)
        except UnknownJobTypeError as exc:
            error = exc.message
            log.error("job_type_unknown")
            await self._queue.complete_job(job.id, success=False, error=error, retryable=False)
            if self._alerts is not None:
                await self._alerts.send(
                    AlertType.UNKNOWN_JOB_TYPE,
                    AlertSeverity.ERROR,
                    "Unknown job type",
                    error,
                    {"job_id": str(job.id), "job_type": job.job_type},
                )
        except TimeoutError:
            error = "Job exceeded the worker deadline and was cancelled"
            log.warning("job_timed_out")
            await self._queue.complete_job(job.id, success=False, error=error)
        except EscrowError as exc:
            error = exc.message
            log.warning("job_handler_failed", error=error, error_code=exc.code, retryable=exc.retryable)
            await self._queue.complete_job(job.id, success=False, error=f"{exc.code}: {error}", retryable=exc.retryable)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            log.error("job_handler_crashed", error=error, exc_info=True)
            await self._queue.complete_job(job.id, success=False, error=error)

        duration_ms = int((time.monotonic() - started) * 1000)
        await emit_job_duration(job.job_type, duration_ms, success)
        return JobResult(
            job_id=str(job.id),
            job_type=job.job_type,
            success=success,
            deferred=deferred,
            error=error,
            duration_ms=duration_ms,
        )
