"""Order models: escrow order and its status history."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text, Uuid

from app.db.base import Base


class Order(Base):
    """Escrow order. ``status`` and ``payment_status`` change only via the order state machine.

    Invariant: total_amount = subtotal - discount_amount.
    """

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    buyer_id = Column(String(255), nullable=False, index=True)
    seller_id = Column(String(255), nullable=False, index=True)
    agent_id = Column(String(255), nullable=True, index=True)  # referring agent, if any

    status = Column(String(30), nullable=False, default="pending")  # OrderStatus enum values

    # Amounts
    subtotal = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=True)  # set when commissions are distributed
    seller_revenue = Column(Numeric(12, 2), nullable=True)
    agent_commission_rate = Column(Numeric(5, 2), nullable=False, default=Decimal("0.00"))  # percent
    agent_platform_cut_rate = Column(Numeric(5, 2), nullable=False, default=Decimal("0.00"))  # percent of agent gross

    # Payment
    payment_intent_id = Column(String(255), nullable=True, unique=True)
    payment_status = Column(String(20), nullable=False, default="unpaid")  # PaymentStatus enum values
    refund_status = Column(String(20), nullable=True)  # partial | full
    refund_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    cancellation_reason = Column(Text, nullable=True)

    # Lifecycle timestamps
    payment_authorized_at = Column(DateTime(timezone=True), nullable=True)
    acceptance_deadline = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    revision_requested_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))


class OrderStatusHistory(Base):
    """Append-only log of applied order transitions."""

    __tablename__ = "order_status_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(String(30), nullable=False)
    to_status = Column(String(30), nullable=False)
    actor = Column(String(255), nullable=True)  # user id, or "system" for event-driven transitions
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
