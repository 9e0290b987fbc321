"""CloudWatch custom metric emission for business events and job durations.

All functions are fire-and-forget: they catch exceptions internally and log
warnings via structlog. They NEVER raise or block the caller.

Metrics are emitted via boto3 put_metric_data. Since boto3 is synchronous,
calls are dispatched to a ThreadPoolExecutor to avoid blocking the async event loop.
Emission is skipped entirely unless METRICS_ENABLED is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_metric(metric_name: str, value: float, unit: str, dimensions: list[dict]) -> None:
    """Synchronous put_metric_data. Runs in thread pool."""
    try:
        _get_client().put_metric_data(
            Namespace=get_settings().cloudwatch_namespace,
            MetricData=[{
                "MetricName": metric_name,
                "Dimensions": dimensions,
                "Value": value,
                "Unit": unit,
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("metric_emit_failed", error=str(e), metric=metric_name)


def _dispatch(metric_name: str, value: float, unit: str, dimensions: list[dict]) -> None:
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_metric, metric_name, value, unit, dimensions)


async def emit_business_event(event_name: str, **dimensions: str) -> None:
    """Emit a business event count (webhook_received, withdrawal_processed, ...). Non-blocking."""
    dims = [{"Name": "Event", "Value": event_name}]
    dims.extend({"Name": k, "Value": str(v)} for k, v in dimensions.items() if v is not None)
    _dispatch("EventCount", 1.0, "Count", dims)


async def emit_job_duration(job_type: str, duration_ms: float, success: bool) -> None:
    """Emit a job execution duration. Non-blocking."""
    dims = [
        {"Name": "JobType", "Value": job_type},
        {"Name": "Outcome", "Value": "success" if success else "failure"},
    ]
    _dispatch("JobDuration", duration_ms, "Milliseconds", dims)
