"""Wiring of the payment-event backbone.

Every component takes its collaborators explicitly; this module is the one
place that knows how they fit together, for the API layer and for tests.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, get_settings
from app.events.intake import EventIntake
from app.events.log import EventLog
from app.events.processor import WebhookEventProcessor
from app.ledger.commissions import CommissionLedger
from app.orders.service import OrderService
from app.payments.processor import PaymentProcessor
from app.queue.handlers import JobHandlers
from app.queue.manager import JobQueue
from app.queue.scheduler import MaintenanceScheduler
from app.queue.worker import JobWorker
from app.services.alerting import AlertSink
from app.services.analytics import AnalyticsService
from app.withdrawals.processor import WithdrawalBatchProcessor
from app.withdrawals.service import WithdrawalService


@dataclass
class Backbone:
    session_factory: async_sessionmaker[AsyncSession]
    alerts: AlertSink
    queue: JobQueue
    event_log: EventLog
    intake: EventIntake
    orders: OrderService
    ledger: CommissionLedger
    withdrawals: WithdrawalService
    withdrawal_processor: WithdrawalBatchProcessor
    event_processor: WebhookEventProcessor
    analytics: AnalyticsService
    maintenance: MaintenanceScheduler
    handlers: JobHandlers
    worker: JobWorker


def build_backbone(
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor,
    settings: Settings | None = None,
    alerts: AlertSink | None = None,
) -> Backbone:
    settings = settings or get_settings()
    alerts = alerts or AlertSink(session_factory, settings.alert_webhook_url, settings.environment)

    queue = JobQueue(session_factory, alerts=alerts, default_max_attempts=settings.job_max_attempts)
    event_log = EventLog()
    intake = EventIntake(
        session_factory,
        queue,
        event_log,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )
    orders = OrderService(
        session_factory,
        processor,
        queue,
        alerts=alerts,
        acceptance_window_hours=settings.acceptance_window_hours,
    )
    ledger = CommissionLedger(
        session_factory,
        alerts=alerts,
        platform_fee_rate=settings.platform_fee_rate,
        revenue_hold_hours=settings.revenue_hold_hours,
    )
    withdrawals = WithdrawalService(
        session_factory,
        alerts=alerts,
        min_amount=settings.min_withdrawal_amount,
        currency=settings.payout_currency,
    )
    withdrawal_processor = WithdrawalBatchProcessor(
        withdrawals,
        processor,
        alerts=alerts,
        max_concurrent=settings.max_concurrent_withdrawals,
        batch_size=settings.withdrawal_batch_size,
    )
    event_processor = WebhookEventProcessor(session_factory, event_log, orders, withdrawals, alerts=alerts)
    analytics = AnalyticsService(session_factory)
    maintenance = MaintenanceScheduler(
        session_factory,
        queue,
        ledger,
        orders,
        withdrawal_processor,
        alerts=alerts,
        stale_job_threshold_minutes=settings.stale_job_threshold_minutes,
        failed_job_alert_threshold=settings.failed_job_alert_threshold,
        auto_complete_hours=settings.auto_complete_hours,
        orphan_order_hours=settings.orphan_order_hours,
        withdrawal_reconcile_minutes=settings.withdrawal_reconcile_minutes,
        webhook_retention_days=settings.webhook_retention_days,
        alert_retention_days=settings.alert_retention_days,
    )
    handlers = JobHandlers(session_factory, event_processor, ledger, analytics, maintenance)
    worker = JobWorker(
        queue,
        handlers,
        alerts=alerts,
        default_max_jobs=settings.job_batch_size,
        max_jobs_cap=settings.max_jobs_cap,
        timeout_ms=settings.worker_timeout_ms,
        dependency_defer_seconds=settings.dependency_defer_seconds,
    )
    return Backbone(
        session_factory=session_factory,
        alerts=alerts,
        queue=queue,
        event_log=event_log,
        intake=intake,
        orders=orders,
        ledger=ledger,
        withdrawals=withdrawals,
        withdrawal_processor=withdrawal_processor,
        event_processor=event_processor,
        analytics=analytics,
        maintenance=maintenance,
        handlers=handlers,
        worker=worker,
    )
