"""Scheduler-invoked job worker endpoint."""

from fastapi import APIRouter, Depends

from app.api.deps import get_backbone
from app.core.auth import require_worker_secret
from app.core.config import get_settings
from app.queue.schemas import RunJobsRequest, RunJobsResponse
from app.services.backbone import Backbone

router = APIRouter()


@router.post("/jobs/run", response_model=RunJobsResponse, dependencies=[Depends(require_worker_secret)])
async def run_jobs(
    request: RunJobsRequest | None = None,
    backbone: Backbone = Depends(get_backbone),
):
    """Drain the queue within the job budget and wall-clock deadline.

    Omitted fields fall back to the configured defaults; max_jobs and
    timeout_ms are capped.
    """
    request = request or RunJobsRequest()
    return await backbone.worker.run(
        max_jobs=request.max_jobs,
        timeout_ms=request.timeout_ms,
        job_types=request.job_types,
        concurrency=get_settings().worker_concurrency,
    )
