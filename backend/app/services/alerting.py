"""Alerting sink: fan-out of operational failures.

Every alert is logged, stored in ``system_alerts``, and for error/critical
severities posted to an external Slack-compatible webhook. The sink never
raises: an alert about a failure must not replace the failure itself.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.system_alert import SystemAlert

logger = structlog.get_logger(__name__)


class AlertType(str, Enum):
    WEBHOOK_FAILURE = "webhook_failure"
    JOB_FAILED = "job_failed"
    JOB_STUCK = "job_stuck"
    JOB_FAILURE_SPIKE = "job_failure_spike"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    LEDGER_IMBALANCE = "ledger_imbalance"
    COMMISSION_DRIFT = "commission_drift"
    TRANSFER_FAILED = "transfer_failed"
    PAYOUT_FAILED = "payout_failed"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    STRIPE_ERROR = "stripe_error"
    DISPUTE_OPENED = "dispute_opened"
    WITHDRAWAL_STUCK = "withdrawal_stuck"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_EXTERNAL_SEVERITIES = {AlertSeverity.ERROR, AlertSeverity.CRITICAL}

_SEVERITY_EMOJI = {
    AlertSeverity.INFO: ":information_source:",
    AlertSeverity.WARNING: ":warning:",
    AlertSeverity.ERROR: ":x:",
    AlertSeverity.CRITICAL: ":rotating_light:",
}


class AlertSink:
    """Persists alerts and forwards the serious ones to an external channel."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_url: str = "",
        environment: str = "production",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._session_factory = session_factory
        self._webhook_url = webhook_url
        self._environment = environment
        self._transport = transport

    async def send(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: dict | None = None,
    ) -> uuid.UUID | None:
        """Record an alert. Returns the stored alert id, or None if storage failed."""
        context = context or {}
        log = logger.bind(alert_type=alert_type.value, severity=severity.value, title=title, **context)
        if severity in _EXTERNAL_SEVERITIES:
            log.error("alert_raised", message=message)
        else:
            log.warning("alert_raised", message=message)

        alert_id = await self._store(alert_type, severity, title, message, context)

        if severity in _EXTERNAL_SEVERITIES and self._webhook_url:
            await self._post_external(alert_type, severity, title, message, context)

        return alert_id

    async def _store(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: dict,
    ) -> uuid.UUID | None:
        try:
            async with self._session_factory() as session:
                alert = SystemAlert(
                    alert_type=alert_type.value,
                    severity=severity.value,
                    title=title,
                    message=message,
                    context=_jsonable(context),
                )
                session.add(alert)
                await session.commit()
                return alert.id
        except Exception as exc:
            logger.error("alert_store_failed", alert_type=alert_type.value, error=str(exc), error_type=type(exc).__name__)
            return None

    async def _post_external(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: dict,
    ) -> None:
        fields = [{"title": key, "value": str(value), "short": True} for key, value in context.items()]
        payload = {
            "text": f"{_SEVERITY_EMOJI[severity]} [{severity.value.upper()}] {title}",
            "attachments": [
                {
                    "color": "danger" if severity == AlertSeverity.CRITICAL else "warning",
                    "text": message,
                    "fields": [
                        {"title": "type", "value": alert_type.value, "short": True},
                        {"title": "environment", "value": self._environment, "short": True},
                        *fields,
                    ],
                    "ts": int(datetime.now(UTC).timestamp()),
                }
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(self._webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("alert_external_post_failed", alert_type=alert_type.value, error=str(exc))


def _jsonable(context: dict) -> dict:
    """Stringify values JSON columns cannot hold (UUID, Decimal, datetime)."""
    out = {}
    for key, value in context.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            out[key] = value
        else:
            out[key] = str(value)
    return out
