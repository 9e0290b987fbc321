"""Builders for signed events, orders, revenue and payout profiles used across test groups."""

import hashlib
import hmac
import json
import time
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select, update

from app.db.models.job import Job
from app.db.models.order import Order
from app.db.models.payout_profile import PayoutProfile
from app.db.models.revenue import Revenue
from app.db.models.system_alert import SystemAlert

WEBHOOK_SECRET = "whsec_test_secret"
WORKER_SECRET = "test-worker-secret"

BUYER = "buyer-001"
SELLER = "seller-001"
AGENT = "agent-001"


# ──────────────────────────────────────────────────────────────────────────────
# Signed processor events
# ──────────────────────────────────────────────────────────────────────────────


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``t=...,v1=...`` signature header the way the processor does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str | None = None, created: int | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": obj},
    }


def encode(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")


async def ingest(backbone, event: dict):
    """Push an event through signature verification and intake."""
    payload = encode(event)
    return await backbone.intake.ingest(payload, sign_payload(payload))


async def post_event(client, event: dict):
    payload = encode(event)
    return await client.post(
        "/webhooks/payment-events",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
    )


# ──────────────────────────────────────────────────────────────────────────────
# Orders
# ──────────────────────────────────────────────────────────────────────────────


async def create_authorized_order(backbone, intent_id: str | None = None, **kwargs) -> Order:
    """Create an order and record the processor's authorization for it."""
    intent_id = intent_id or f"pi_{uuid.uuid4().hex[:12]}"
    params = {"buyer_id": BUYER, "seller_id": SELLER, "subtotal": Decimal("100.00")}
    params.update(kwargs)
    order = await backbone.orders.create_order(payment_intent_id=intent_id, **params)
    async with backbone.session_factory() as session:
        await backbone.orders.record_authorization(session, intent_id)
        await session.commit()
    return await backbone.orders.get_order(order.id)


async def create_delivered_order(backbone, **kwargs) -> Order:
    order = await create_authorized_order(backbone, **kwargs)
    await backbone.orders.accept_order(order.id, order.seller_id)
    await backbone.orders.start_work(order.id, order.seller_id)
    return await backbone.orders.deliver_order(order.id, order.seller_id)


async def create_completed_order(backbone, **kwargs) -> Order:
    order = await create_delivered_order(backbone, **kwargs)
    return await backbone.orders.complete_order(order.id, order.buyer_id)


async def insert_order(
    session_factory,
    status: str = "completed",
    total: Decimal = Decimal("100.00"),
    buyer_id: str = BUYER,
    seller_id: str = SELLER,
    agent_id: str | None = None,
    agent_commission_rate: Decimal = Decimal("0.00"),
    agent_platform_cut_rate: Decimal = Decimal("0.00"),
    payment_status: str = "captured",
) -> Order:
    """Insert an order row directly in the given status (no transitions, no jobs)."""
    now = datetime.now(UTC)
    order = Order(
        id=uuid.uuid4(),
        buyer_id=buyer_id,
        seller_id=seller_id,
        agent_id=agent_id,
        status=status,
        subtotal=total,
        discount_amount=Decimal("0.00"),
        total_amount=total,
        agent_commission_rate=agent_commission_rate,
        agent_platform_cut_rate=agent_platform_cut_rate,
        payment_intent_id=f"pi_{uuid.uuid4().hex[:12]}",
        payment_status=payment_status,
        refund_amount=Decimal("0.00"),
        completed_at=now if status == "completed" else None,
    )
    async with session_factory() as session:
        session.add(order)
        await session.commit()
    return order


async def set_order_fields(session_factory, order_id: uuid.UUID, **values) -> None:
    async with session_factory() as session:
        await session.execute(update(Order).where(Order.id == order_id).values(**values))
        await session.commit()


# ──────────────────────────────────────────────────────────────────────────────
# Revenue and payout accounts
# ──────────────────────────────────────────────────────────────────────────────


async def add_payout_profile(
    session_factory,
    user_id: str = SELLER,
    role: str = "freelance",
    account_id: str | None = "acct_seller_001",
    is_active: bool = True,
) -> PayoutProfile:
    profile = PayoutProfile(
        user_id=user_id,
        role=role,
        is_active=is_active,
        stripe_account_id=account_id,
        charges_enabled=True,
        payouts_enabled=True,
        onboarding_completed=True,
    )
    async with session_factory() as session:
        session.add(profile)
        await session.commit()
    return profile


async def add_available_revenue(
    session_factory,
    user_id: str,
    amounts: list[Decimal],
    status: str = "available",
) -> list[Revenue]:
    """Available revenue rows for ``user_id``, oldest first, backed by one completed order."""
    order = await insert_order(session_factory, seller_id=user_id, total=sum(amounts, Decimal("0.00")))
    created = []
    async with session_factory() as session:
        for index, amount in enumerate(amounts):
            row = Revenue(
                id=uuid.uuid4(),
                order_id=order.id,
                user_id=user_id,
                revenue_type="seller",
                amount=amount,
                status=status,
                locked=False,
                available_at=datetime(2026, 1, 1 + index, tzinfo=UTC),
            )
            session.add(row)
            created.append(row)
        await session.commit()
    return created


# ──────────────────────────────────────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────────────────────────────────────


async def fetch(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


async def rows(session_factory, model, *criteria) -> list:
    async with session_factory() as session:
        result = await session.execute(select(model).where(*criteria))
        return list(result.scalars().all())


async def jobs_of_type(session_factory, job_type) -> list[Job]:
    async with session_factory() as session:
        result = await session.execute(
            select(Job).where(Job.job_type == job_type.value).order_by(Job.created_at.asc())
        )
        return list(result.scalars().all())


async def alerts_of_type(session_factory, alert_type) -> list[SystemAlert]:
    return await rows(session_factory, SystemAlert, SystemAlert.alert_type == alert_type.value)
