"""AnalyticsService: daily aggregates for the operator dashboard."""

from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.daily_stats import DailyStats
from app.db.models.order import Order
from app.db.models.withdrawal import Withdrawal

logger = structlog.get_logger(__name__)


def _decimal(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


class AnalyticsService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def aggregate_daily_stats(self, day: date | None = None) -> DailyStats:
        """Recompute the stats row for ``day`` (UTC). Defaults to yesterday; safe to re-run."""
        day = day or (datetime.now(UTC) - timedelta(days=1)).date()
        start = datetime.combine(day, time.min, tzinfo=UTC)
        end = start + timedelta(days=1)

        async with self._session_factory() as session:

            async def scalar(stmt):
                return (await session.execute(stmt)).scalar_one()

            orders_created = await scalar(
                select(func.count(Order.id)).where(Order.created_at >= start, Order.created_at < end)
            )
            orders_completed, gross_volume, platform_revenue = (
                await session.execute(
                    select(
                        func.count(Order.id),
                        func.coalesce(func.sum(Order.total_amount), 0),
                        func.coalesce(func.sum(Order.platform_fee), 0),
                    ).where(Order.completed_at >= start, Order.completed_at < end)
                )
            ).one()
            orders_cancelled = await scalar(
                select(func.count(Order.id)).where(Order.cancelled_at >= start, Order.cancelled_at < end)
            )
            refunded_amount = await scalar(
                select(func.coalesce(func.sum(Order.refund_amount), 0)).where(
                    Order.refunded_at >= start, Order.refunded_at < end
                )
            )
            withdrawals_completed, withdrawn_amount = (
                await session.execute(
                    select(func.count(Withdrawal.id), func.coalesce(func.sum(Withdrawal.amount), 0)).where(
                        Withdrawal.status == "completed",
                        Withdrawal.completed_at >= start,
                        Withdrawal.completed_at < end,
                    )
                )
            ).one()

            stats = await session.get(DailyStats, day)
            if stats is None:
                stats = DailyStats(stat_date=day)
                session.add(stats)
            stats.orders_created = orders_created
            stats.orders_completed = orders_completed
            stats.orders_cancelled = orders_cancelled
            stats.gross_volume = _decimal(gross_volume)
            stats.platform_revenue = _decimal(platform_revenue)
            stats.refunded_amount = _decimal(refunded_amount)
            stats.withdrawals_completed = withdrawals_completed
            stats.withdrawn_amount = _decimal(withdrawn_amount)
            await session.commit()

        logger.info("daily_stats_aggregated", stat_date=day.isoformat(), orders_completed=orders_completed)
        return stats
