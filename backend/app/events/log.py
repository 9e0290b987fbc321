"""Event log: priorities, resource derivation and same-resource dependency resolution.

The processor may deliver ``payment_intent.amount_capturable_updated`` after
``payment_intent.succeeded`` under retries. Each event type declares the
event types it depends on for the same resource; at ingestion the most recent
still-unprocessed event of such a type becomes the new event's
``depends_on_event`` and the new event is not processable until that one is.

A dependency that was never observed is treated as satisfied. Order and
payment status guards (see app.orders.state_machine) keep a late prerequisite
from moving an order backwards.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.webhook_event import WebhookEventLog

logger = structlog.get_logger(__name__)

EVENT_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "payment_intent.succeeded": ("payment_intent.amount_capturable_updated",),
    "charge.refunded": ("payment_intent.succeeded",),
}

EVENT_PRIORITIES: dict[str, int] = {
    "charge.dispute.created": 10,
    "payout.failed": 9,
    "payment_intent.payment_failed": 8,
    "charge.refunded": 7,
    "payment_intent.succeeded": 6,
    "payment_intent.amount_capturable_updated": 5,
    "payout.paid": 4,
    "checkout.session.completed": 3,
    "account.updated": 2,
}
DEFAULT_PRIORITY = 1

# Event types that produce a process_webhook job; anything else is only logged
RELEVANT_EVENTS = frozenset({
    "payment_intent.amount_capturable_updated",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "charge.refunded",
    "charge.dispute.created",
    "charge.dispute.closed",
    "checkout.session.completed",
    "checkout.session.expired",
    "account.updated",
    "payout.paid",
    "payout.failed",
    "payout.canceled",
})


def event_priority(event_type: str) -> int:
    """Disputes and payout failures first, unknown types last."""
    return EVENT_PRIORITIES.get(event_type, DEFAULT_PRIORITY)


def event_dependencies(event_type: str) -> tuple[str, ...]:
    return EVENT_DEPENDENCIES.get(event_type, ())


def resource_of(event_type: str, data_object: dict) -> tuple[str, str | None]:
    """Return (resource_type, resource_id) for an event.

    Charge events that reference a payment intent are keyed on the intent so a
    refund correlates with the capture it undoes.
    """
    resource_type = event_type.split(".", 1)[0]
    if resource_type == "charge" and data_object.get("payment_intent"):
        return "payment_intent", data_object["payment_intent"]
    return resource_type, data_object.get("id")


def event_created_at(event: dict) -> datetime:
    created = event.get("created")
    if isinstance(created, (int, float)):
        return datetime.fromtimestamp(created, UTC)
    return datetime.now(UTC)


class EventLog:
    """Queries and updates on the webhook_events table. All methods join the caller's session."""

    async def record(self, session: AsyncSession, event: dict) -> WebhookEventLog:
        """Insert an accepted event, resolving its same-resource dependency."""
        event_type = event["type"]
        data_object = event.get("data", {}).get("object", {}) or {}
        resource_type, resource_id = resource_of(event_type, data_object)

        depends_on = None
        dependency_types = event_dependencies(event_type)
        if dependency_types and resource_id:
            result = await session.execute(
                select(WebhookEventLog.event_id)
                .where(
                    WebhookEventLog.resource_id == resource_id,
                    WebhookEventLog.event_type.in_(dependency_types),
                    WebhookEventLog.processed.is_(False),
                )
                .order_by(WebhookEventLog.event_created.desc())
                .limit(1)
            )
            depends_on = result.scalar_one_or_none()

        entry = WebhookEventLog(
            event_id=event["id"],
            event_type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            event_created=event_created_at(event),
            priority=event_priority(event_type),
            payload=data_object,
            processed=False,
            depends_on_event=depends_on,
            retry_count=0,
        )
        session.add(entry)
        await session.flush()

        logger.info(
            "event_logged",
            event_id=entry.event_id,
            event_type=event_type,
            resource_id=resource_id,
            depends_on_event=depends_on,
            priority=entry.priority,
        )
        return entry

    async def get(self, session: AsyncSession, event_id: str) -> WebhookEventLog | None:
        result = await session.execute(select(WebhookEventLog).where(WebhookEventLog.event_id == event_id))
        return result.scalar_one_or_none()

    async def can_process(self, session: AsyncSession, event_id: str) -> bool:
        """True iff the event exists, is unprocessed, and its dependency (if any) is processed."""
        entry = await self.get(session, event_id)
        if entry is None or entry.processed:
            return False
        if entry.depends_on_event is None:
            return True
        dependency = await self.get(session, entry.depends_on_event)
        # A dependency row that vanished cannot block forever
        return dependency is None or bool(dependency.processed)

    async def mark_processed(self, session: AsyncSession, event_id: str) -> None:
        await session.execute(
            update(WebhookEventLog)
            .where(WebhookEventLog.event_id == event_id)
            .values(processed=True, processed_at=datetime.now(UTC), error=None)
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, session: AsyncSession, event_id: str, error: str) -> None:
        await session.execute(
            update(WebhookEventLog)
            .where(WebhookEventLog.event_id == event_id)
            .values(error=error[:4000], retry_count=WebhookEventLog.retry_count + 1)
            .execution_options(synchronize_session=False)
        )

    async def reset(self, session: AsyncSession, event_id: str) -> None:
        """Mark an event unprocessed again (operator replay)."""
        await session.execute(
            update(WebhookEventLog)
            .where(WebhookEventLog.event_id == event_id)
            .values(processed=False, processed_at=None, error=None)
            .execution_options(synchronize_session=False)
        )

    async def pending_events(self, session: AsyncSession, limit: int = 100) -> list[WebhookEventLog]:
        """Unprocessed events, most urgent first."""
        result = await session.execute(
            select(WebhookEventLog)
            .where(WebhookEventLog.processed.is_(False))
            .order_by(WebhookEventLog.priority.desc(), WebhookEventLog.event_created.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
