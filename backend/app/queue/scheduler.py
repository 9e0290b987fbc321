"""Periodic maintenance: job monitoring, order timeouts, withdrawal reconciliation, revenue release, retention.

Invoked by an external scheduler (cron hitting POST /ops/maintenance, or a
cleanup_data job). Every task is independent; one failing task is reported
in the summary and does not stop the others.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import BusinessRuleError
from app.db.models.processed_webhook import ProcessedWebhook
from app.db.models.system_alert import SystemAlert
from app.ledger.commissions import CommissionLedger
from app.orders.service import OrderService
from app.queue.manager import JobQueue
from app.queue.schemas import JobType
from app.services.alerting import AlertSeverity, AlertSink, AlertType
from app.withdrawals.processor import WithdrawalBatchProcessor

logger = structlog.get_logger(__name__)

DEFAULT_TASKS = (
    "sweep_stale_jobs",
    "monitor_failed_jobs",
    "release_revenues",
    "auto_complete_orders",
    "cancel_expired_authorizations",
    "cancel_orphan_orders",
    "reconcile_withdrawals",
    "audit_ledger",
)
OPTIONAL_TASKS = ("recover_payments", "cleanup_data", "sync_analytics")


class MaintenanceScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        ledger: CommissionLedger,
        orders: OrderService,
        withdrawals: WithdrawalBatchProcessor,
        alerts: AlertSink | None = None,
        stale_job_threshold_minutes: int = 30,
        failed_job_alert_threshold: int = 5,
        auto_complete_hours: int = 72,
        orphan_order_hours: int = 24,
        withdrawal_reconcile_minutes: int = 60,
        webhook_retention_days: int = 7,
        alert_retention_days: int = 90,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._ledger = ledger
        self._orders = orders
        self._withdrawals = withdrawals
        self._alerts = alerts
        self._stale_threshold = stale_job_threshold_minutes
        self._failed_threshold = failed_job_alert_threshold
        self._auto_complete_hours = auto_complete_hours
        self._orphan_order_hours = orphan_order_hours
        self._withdrawal_reconcile_minutes = withdrawal_reconcile_minutes
        self._webhook_retention_days = webhook_retention_days
        self._alert_retention_days = alert_retention_days

    async def sweep_stale_jobs(self) -> int:
        """Return jobs orphaned by a dead worker to the queue."""
        count = await self._queue.reset_stale_jobs(self._stale_threshold)
        if count:
            await self._alert(
                AlertType.JOB_STUCK,
                AlertSeverity.WARNING,
                "Stale jobs reset",
                f"{count} job(s) were processing for more than {self._stale_threshold} minutes",
                {"count": count},
            )
        return count

    async def monitor_failed_jobs(self) -> int:
        """Alert when permanently failed jobs in the last hour reach the threshold."""
        failed = await self._queue.count_failed_since(datetime.now(UTC) - timedelta(hours=1))
        if failed >= self._failed_threshold:
            await self._alert(
                AlertType.JOB_FAILURE_SPIKE,
                AlertSeverity.ERROR,
                "Job failure spike",
                f"{failed} job(s) failed permanently in the last hour",
                {"failed": failed, "threshold": self._failed_threshold},
            )
        return failed

    async def audit_ledger(self) -> int:
        unbalanced = await self._ledger.audit_unbalanced()
        if unbalanced:
            await self._alert(
                AlertType.LEDGER_IMBALANCE,
                AlertSeverity.CRITICAL,
                "Unbalanced ledger groups found",
                f"{len(unbalanced)} transaction group(s) do not balance",
                {"groups": ", ".join(row["transaction_group_id"] for row in unbalanced[:10])},
            )
        return len(unbalanced)

    async def cleanup_old_data(self, retention_days: int | None = None) -> dict:
        """Delete expired replay-protection rows and resolved alerts. Event log and jobs are kept forever."""
        now = datetime.now(UTC)
        webhook_cutoff = now - timedelta(days=retention_days or self._webhook_retention_days)
        alert_cutoff = now - timedelta(days=self._alert_retention_days)

        async with self._session_factory() as session:
            replay = await session.execute(
                delete(ProcessedWebhook).where(ProcessedWebhook.processed_at < webhook_cutoff)
            )
            alerts = await session.execute(
                delete(SystemAlert).where(SystemAlert.resolved.is_(True), SystemAlert.created_at < alert_cutoff)
            )
            await session.commit()

        summary = {
            "processed_webhooks": replay.rowcount,
            "system_alerts": alerts.rowcount,
        }
        logger.info("old_data_cleaned", **summary)
        return summary

    async def run(self, tasks: list[str] | None = None) -> dict:
        """Run the named tasks (default: DEFAULT_TASKS). Returns per-task results or errors."""
        runners = {
            "sweep_stale_jobs": self.sweep_stale_jobs,
            "monitor_failed_jobs": self.monitor_failed_jobs,
            "release_revenues": self._ledger.release_pending_revenues,
            "auto_complete_orders": lambda: self._orders.auto_complete_delivered(self._auto_complete_hours),
            "cancel_expired_authorizations": self._orders.cancel_expired_authorizations,
            "cancel_orphan_orders": lambda: self._orders.cancel_orphan_orders(self._orphan_order_hours),
            "reconcile_withdrawals": lambda: self._withdrawals.reconcile_processing(self._withdrawal_reconcile_minutes),
            "audit_ledger": self.audit_ledger,
            "recover_payments": self._orders.recover_payments,
            "cleanup_data": self.cleanup_old_data,
            "sync_analytics": lambda: self._queue.enqueue(JobType.SYNC_ANALYTICS, {}),
        }
        selected = tasks or list(DEFAULT_TASKS)
        unknown = [name for name in selected if name not in runners]
        if unknown:
            raise BusinessRuleError(f"Unknown maintenance task(s): {', '.join(unknown)}")

        summary: dict = {}
        for name in selected:
            try:
                result = await runners[name]()
                summary[name] = str(result) if not isinstance(result, (int, dict)) else result
            except Exception as exc:
                logger.error("maintenance_task_failed", task=name, error=str(exc), error_type=type(exc).__name__, exc_info=True)
                summary[name] = {"error": type(exc).__name__}
        logger.info("maintenance_run_complete", tasks=selected)
        return summary

    async def _alert(self, alert_type: AlertType, severity: AlertSeverity, title: str, message: str, context: dict) -> None:
        if self._alerts is not None:
            await self._alerts.send(alert_type, severity, title, message, context)
