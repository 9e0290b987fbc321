"""Ledger models: double-entry rows, commission runs, refund reversals, balance checks."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from app.db.base import Base


class LedgerEntry(Base):
    """One leg of a transaction group. Per group, sum(debit) == sum(credit) within 0.01."""

    __tablename__ = "ledger_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_group_id = Column(Uuid, nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True, index=True)
    account = Column(String(50), nullable=False)  # escrow | seller_wallet | agent_wallet | platform_revenue
    user_id = Column(String(255), nullable=True)
    entry_type = Column(String(10), nullable=False)  # debit | credit
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))


class CommissionRun(Base):
    """Marks an order's commissions as distributed. Unique per order."""

    __tablename__ = "commission_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, unique=True)
    transaction_group_id = Column(Uuid, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    seller_amount = Column(Numeric(12, 2), nullable=False)
    agent_amount = Column(Numeric(12, 2), nullable=False)
    platform_amount = Column(Numeric(12, 2), nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    completed_at = Column(DateTime(timezone=True), nullable=True)


class RefundReversal(Base):
    """Marks a (order, refund) pair as reversed in the ledger."""

    __tablename__ = "refund_reversals"
    __table_args__ = (UniqueConstraint("order_id", "refund_id", name="uq_refund_reversals_order_refund"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    refund_id = Column(String(255), nullable=False)
    transaction_group_id = Column(Uuid, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    seller_amount = Column(Numeric(12, 2), nullable=False)
    agent_amount = Column(Numeric(12, 2), nullable=False)
    platform_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))


class LedgerBalanceCheck(Base):
    """Result of verifying one transaction group."""

    __tablename__ = "ledger_balance_checks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_group_id = Column(Uuid, nullable=False, index=True)
    total_debits = Column(Numeric(14, 2), nullable=False)
    total_credits = Column(Numeric(14, 2), nullable=False)
    balanced = Column(Boolean, nullable=False)
    checked_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
