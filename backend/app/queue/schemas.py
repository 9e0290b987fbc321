"""Queue schemas: job kinds, job statuses, worker request/response models."""

from enum import Enum

from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Closed set of job kinds. Every member must be handled by JobHandlers.dispatch."""

    DISTRIBUTE_COMMISSIONS = "distribute_commissions"
    REVERSE_COMMISSIONS = "reverse_commissions"
    SEND_NOTIFICATION = "send_notification"
    SYNC_ANALYTICS = "sync_analytics"
    PROCESS_WEBHOOK = "process_webhook"
    CLEANUP_DATA = "cleanup_data"
    RELEASE_REVENUES = "release_revenues"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Priorities for jobs not derived from an event's priority
PRIORITY_REVERSE_COMMISSIONS = 10
PRIORITY_DISTRIBUTE_COMMISSIONS = 5
PRIORITY_NOTIFICATION = 1


class RunJobsRequest(BaseModel):
    """Body of POST /jobs/run. Omitted fields fall back to configured defaults."""

    max_jobs: int | None = Field(default=None, ge=1)
    job_types: list[JobType] | None = None
    timeout_ms: int | None = Field(default=None, ge=1)


class JobResult(BaseModel):
    """Outcome of one job execution within a worker run."""

    job_id: str
    job_type: str
    success: bool
    deferred: bool = False
    error: str | None = None
    duration_ms: int


class RunJobsResponse(BaseModel):
    """Summary of one worker invocation."""

    success: bool = True
    error: str | None = None  # exception type when queue bookkeeping failed mid-run
    processed: int
    successful: int
    failed: int
    deferred: int
    total_duration_ms: int  # sum of per-job durations
    elapsed_ms: int  # wall clock of the whole run
    stopped_due_to_timeout: bool
    results: list[JobResult]


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
