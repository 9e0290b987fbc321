"""Tests for EventLog: priorities, resource keys and same-resource dependencies."""

import pytest

from app.events.log import EventLog, event_dependencies, event_priority, resource_of
from tests.factories import make_event

pytestmark = pytest.mark.unit


def test_priorities_put_disputes_first_and_unknown_types_last():
    assert event_priority("charge.dispute.created") == 10
    assert event_priority("payout.failed") == 9
    assert event_priority("payment_intent.succeeded") > event_priority("payment_intent.amount_capturable_updated")
    assert event_priority("customer.created") == 1


def test_dependency_table():
    assert event_dependencies("payment_intent.succeeded") == ("payment_intent.amount_capturable_updated",)
    assert event_dependencies("charge.refunded") == ("payment_intent.succeeded",)
    assert event_dependencies("payout.paid") == ()


def test_charge_events_are_keyed_on_their_payment_intent():
    assert resource_of("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"}) == ("payment_intent", "pi_1")
    assert resource_of("charge.refunded", {"id": "ch_1"}) == ("charge", "ch_1")
    assert resource_of("payout.paid", {"id": "po_1"}) == ("payout", "po_1")


@pytest.mark.asyncio
async def test_event_depends_on_unprocessed_prerequisite(session_factory):
    log = EventLog()
    authorized = make_event("payment_intent.amount_capturable_updated", {"id": "pi_dep"}, created=1_700_000_000)
    captured = make_event("payment_intent.succeeded", {"id": "pi_dep"}, created=1_700_000_010)

    async with session_factory() as session:
        await log.record(session, authorized)
        entry = await log.record(session, captured)
        await session.commit()

    assert entry.depends_on_event == authorized["id"]
    assert entry.resource_type == "payment_intent"
    assert entry.priority == 6

    async with session_factory() as session:
        assert await log.can_process(session, captured["id"]) is False
        await log.mark_processed(session, authorized["id"])
        await session.commit()

    async with session_factory() as session:
        assert await log.can_process(session, captured["id"]) is True


@pytest.mark.asyncio
async def test_unobserved_prerequisite_counts_as_satisfied(session_factory):
    log = EventLog()
    captured = make_event("payment_intent.succeeded", {"id": "pi_instant"})

    async with session_factory() as session:
        entry = await log.record(session, captured)
        await session.commit()

        assert entry.depends_on_event is None
        assert await log.can_process(session, captured["id"]) is True


@pytest.mark.asyncio
async def test_processed_prerequisite_is_not_a_dependency(session_factory):
    log = EventLog()
    authorized = make_event("payment_intent.amount_capturable_updated", {"id": "pi_done"})
    captured = make_event("payment_intent.succeeded", {"id": "pi_done"})

    async with session_factory() as session:
        await log.record(session, authorized)
        await log.mark_processed(session, authorized["id"])
        entry = await log.record(session, captured)
        await session.commit()

    assert entry.depends_on_event is None


@pytest.mark.asyncio
async def test_processed_or_unknown_events_cannot_be_processed(session_factory):
    log = EventLog()
    event = make_event("payout.paid", {"id": "po_1"})

    async with session_factory() as session:
        await log.record(session, event)
        await log.mark_processed(session, event["id"])
        await session.commit()

    async with session_factory() as session:
        assert await log.can_process(session, event["id"]) is False
        assert await log.can_process(session, "evt_missing") is False


@pytest.mark.asyncio
async def test_mark_failed_records_error_and_counts_retries(session_factory):
    log = EventLog()
    event = make_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 100})

    async with session_factory() as session:
        await log.record(session, event)
        await log.mark_failed(session, event["id"], "boom")
        await log.mark_failed(session, event["id"], "boom again")
        await session.commit()

    async with session_factory() as session:
        entry = await log.get(session, event["id"])
    assert entry.processed is False
    assert entry.error == "boom again"
    assert entry.retry_count == 2


@pytest.mark.asyncio
async def test_reset_makes_a_processed_event_pending_again(session_factory):
    log = EventLog()
    event = make_event("account.updated", {"id": "acct_1"})

    async with session_factory() as session:
        await log.record(session, event)
        await log.mark_processed(session, event["id"])
        await log.reset(session, event["id"])
        await session.commit()

    async with session_factory() as session:
        entry = await log.get(session, event["id"])
        assert entry.processed is False
        assert entry.processed_at is None
        assert await log.can_process(session, event["id"]) is True


@pytest.mark.asyncio
async def test_pending_events_are_ordered_by_priority(session_factory):
    log = EventLog()
    low = make_event("account.updated", {"id": "acct_2"})
    high = make_event("charge.dispute.created", {"id": "dp_1", "payment_intent": "pi_9"})
    middle = make_event("payout.paid", {"id": "po_9"})

    async with session_factory() as session:
        for event in (low, high, middle):
            await log.record(session, event)
        await session.commit()

        pending = await log.pending_events(session)

    assert [entry.event_id for entry in pending] == [high["id"], middle["id"], low["id"]]
