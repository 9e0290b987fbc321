"""JobHandlers: maps each JobType to the service call that performs it.

Handlers are idempotent: a job re-run after a crash between the handler's
commit and complete_job must not repeat its effect.
"""

import uuid
from datetime import date
from decimal import Decimal
from typing import assert_never

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import UnknownJobTypeError
from app.db.models.notification import Notification
from app.events.processor import WebhookEventProcessor
from app.ledger.commissions import CommissionLedger
from app.queue.scheduler import MaintenanceScheduler
from app.queue.schemas import JobType
from app.services.analytics import AnalyticsService

logger = structlog.get_logger(__name__)


class JobHandlers:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_processor: WebhookEventProcessor,
        ledger: CommissionLedger,
        analytics: AnalyticsService,
        maintenance: MaintenanceScheduler,
    ):
        self._session_factory = session_factory
        self._event_processor = event_processor
        self._ledger = ledger
        self._analytics = analytics
        self._maintenance = maintenance

    async def dispatch(self, job_type: str, payload: dict, job_id: uuid.UUID | None = None) -> None:
        """Run the handler for ``job_type``.

        Raises:
            UnknownJobTypeError: ``job_type`` is not a JobType
        """
        try:
            kind = JobType(job_type)
        except ValueError:
            raise UnknownJobTypeError(job_type)

        match kind:
            case JobType.DISTRIBUTE_COMMISSIONS:
                await self._ledger.distribute(uuid.UUID(payload["order_id"]))
            case JobType.REVERSE_COMMISSIONS:
                await self._ledger.reverse(
                    uuid.UUID(payload["order_id"]),
                    payload["refund_id"],
                    Decimal(str(payload["amount"])),
                )
            case JobType.SEND_NOTIFICATION:
                await self._send_notification(payload, job_id)
            case JobType.SYNC_ANALYTICS:
                day = date.fromisoformat(payload["date"]) if payload.get("date") else None
                await self._analytics.aggregate_daily_stats(day)
            case JobType.PROCESS_WEBHOOK:
                await self._event_processor.process(payload)
            case JobType.CLEANUP_DATA:
                await self._maintenance.cleanup_old_data(payload.get("retention_days"))
            case JobType.RELEASE_REVENUES:
                await self._ledger.release_pending_revenues()
            case _:
                assert_never(kind)

    async def _send_notification(self, payload: dict, job_id: uuid.UUID | None) -> None:
        # Keyed on the job id so a re-run cannot notify twice
        notification = Notification(
            id=job_id or uuid.uuid4(),
            user_id=payload["user_id"],
            notification_type=payload["notification_type"],
            title=payload["title"],
            body=payload.get("body") or "",
            data=payload.get("data") or {},
        )
        async with self._session_factory() as session:
            session.add(notification)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("notification_already_sent", job_id=str(job_id))
                return
        logger.info("notification_sent", user_id=payload["user_id"], notification_type=payload["notification_type"])
