"""Tests for AnalyticsService daily aggregation."""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from app.db.models.daily_stats import DailyStats
from app.db.models.withdrawal import Withdrawal
from tests.factories import SELLER, fetch, insert_order, rows, set_order_fields

pytestmark = pytest.mark.integration

DAY = date(2026, 3, 14)
NOON = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


@pytest.fixture
async def activity(session_factory):
    completed = await insert_order(session_factory, total=Decimal("100.00"))
    await set_order_fields(session_factory, completed.id, created_at=NOON, completed_at=NOON, platform_fee=Decimal("5.00"))

    cancelled = await insert_order(session_factory, status="cancelled")
    await set_order_fields(session_factory, cancelled.id, created_at=NOON, cancelled_at=NOON)

    refunded = await insert_order(session_factory, status="refunded", total=Decimal("40.00"))
    await set_order_fields(
        session_factory, refunded.id, created_at=NOON, refunded_at=NOON, refund_amount=Decimal("40.00")
    )

    # Outside the day
    other = await insert_order(session_factory, total=Decimal("999.00"))
    await set_order_fields(
        session_factory,
        other.id,
        created_at=NOON - timedelta(days=1),
        completed_at=NOON - timedelta(days=1),
    )

    async with session_factory() as session:
        session.add_all(
            [
                Withdrawal(user_id=SELLER, amount=Decimal("30.00"), status="completed", completed_at=NOON),
                Withdrawal(user_id=SELLER, amount=Decimal("7.00"), status="processing"),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_aggregates_one_day(backbone, session_factory, activity):
    await backbone.analytics.aggregate_daily_stats(DAY)

    stats = await fetch(session_factory, DailyStats, DAY)
    assert stats.orders_created == 3
    assert stats.orders_completed == 1
    assert stats.orders_cancelled == 1
    assert stats.gross_volume == Decimal("100.00")
    assert stats.platform_revenue == Decimal("5.00")
    assert stats.refunded_amount == Decimal("40.00")
    assert stats.withdrawals_completed == 1
    assert stats.withdrawn_amount == Decimal("30.00")


@pytest.mark.asyncio
async def test_rerun_overwrites_the_same_row(backbone, session_factory, activity):
    await backbone.analytics.aggregate_daily_stats(DAY)
    late = await insert_order(session_factory, total=Decimal("20.00"))
    await set_order_fields(session_factory, late.id, created_at=NOON, completed_at=NOON)

    await backbone.analytics.aggregate_daily_stats(DAY)

    (stats,) = await rows(session_factory, DailyStats)
    assert stats.orders_completed == 2
    assert stats.gross_volume == Decimal("120.00")


@pytest.mark.asyncio
async def test_empty_day_yields_zeroes(backbone, session_factory):
    stats = await backbone.analytics.aggregate_daily_stats(date(2026, 1, 1))

    assert stats.orders_created == 0
    assert stats.gross_volume == Decimal("0.00")
    assert len(await rows(session_factory, DailyStats)) == 1
