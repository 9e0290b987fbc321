"""Tests for JobHandlers.dispatch: routing per JobType and notification dedupe."""

import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import UnknownJobTypeError
from app.db.models.notification import Notification
from app.queue.handlers import JobHandlers
from app.queue.schemas import JobType
from tests.factories import rows

pytestmark = pytest.mark.integration


@pytest.fixture
def collaborators():
    return {
        "event_processor": AsyncMock(),
        "ledger": AsyncMock(),
        "analytics": AsyncMock(),
        "maintenance": AsyncMock(),
    }


@pytest.fixture
def handlers(session_factory, collaborators):
    return JobHandlers(session_factory, **collaborators)


# =============================================================================
# ROUTING
# =============================================================================


@pytest.mark.asyncio
async def test_distribute_calls_ledger(handlers, collaborators):
    order_id = uuid.uuid4()

    await handlers.dispatch(JobType.DISTRIBUTE_COMMISSIONS.value, {"order_id": str(order_id)})

    collaborators["ledger"].distribute.assert_awaited_once_with(order_id)


@pytest.mark.asyncio
async def test_reverse_parses_amount_as_decimal(handlers, collaborators):
    order_id = uuid.uuid4()

    await handlers.dispatch(
        JobType.REVERSE_COMMISSIONS.value,
        {"order_id": str(order_id), "refund_id": "re_1", "amount": "12.50"},
    )

    collaborators["ledger"].reverse.assert_awaited_once_with(order_id, "re_1", Decimal("12.50"))


@pytest.mark.asyncio
async def test_process_webhook_hands_payload_to_event_processor(handlers, collaborators):
    payload = {"event_id": "evt_1", "event_type": "payout.paid", "data": {"object": {}}}

    await handlers.dispatch(JobType.PROCESS_WEBHOOK.value, payload)

    collaborators["event_processor"].process.assert_awaited_once_with(payload)


@pytest.mark.asyncio
async def test_sync_analytics_with_and_without_date(handlers, collaborators):
    await handlers.dispatch(JobType.SYNC_ANALYTICS.value, {"date": "2026-03-14"})
    await handlers.dispatch(JobType.SYNC_ANALYTICS.value, {})

    calls = collaborators["analytics"].aggregate_daily_stats.await_args_list
    assert [c.args for c in calls] == [(date(2026, 3, 14),), (None,)]


@pytest.mark.asyncio
async def test_cleanup_and_release(handlers, collaborators):
    await handlers.dispatch(JobType.CLEANUP_DATA.value, {"retention_days": 3})
    await handlers.dispatch(JobType.RELEASE_REVENUES.value, {})

    collaborators["maintenance"].cleanup_old_data.assert_awaited_once_with(3)
    collaborators["ledger"].release_pending_revenues.assert_awaited_once_with()


@pytest.mark.asyncio
async def test_unknown_job_type_raises(handlers):
    with pytest.raises(UnknownJobTypeError):
        await handlers.dispatch("mine_bitcoin", {})


# =============================================================================
# NOTIFICATIONS
# =============================================================================


@pytest.mark.asyncio
async def test_notification_is_written_once_per_job(handlers, session_factory):
    """A re-run of the same job id after a crash does not notify twice."""
    job_id = uuid.uuid4()
    payload = {
        "user_id": "seller-001",
        "notification_type": "order_received",
        "title": "New order",
        "data": {"order_id": "o-1"},
    }

    await handlers.dispatch(JobType.SEND_NOTIFICATION.value, payload, job_id)
    await handlers.dispatch(JobType.SEND_NOTIFICATION.value, payload, job_id)

    stored = await rows(session_factory, Notification)
    assert len(stored) == 1
    assert stored[0].id == job_id
    assert stored[0].body == ""
    assert stored[0].data == {"order_id": "o-1"}
