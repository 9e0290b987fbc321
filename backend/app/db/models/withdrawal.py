"""Withdrawal models: payout requests and the revenue rows they reserve."""

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
    Uuid,
)

from app.db.base import Base


class Withdrawal(Base):
    """Status moves only through the atomic claim / confirm-success / confirm-failure operations."""

    __tablename__ = "withdrawals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="eur")
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending | processing | completed | failed

    transfer_id = Column(String(255), nullable=True)
    payout_id = Column(String(255), nullable=True, unique=True)
    failure_reason = Column(Text, nullable=True)
    requires_manual_review = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))


class WithdrawalAllocation(Base):
    """Revenue row reserved by a withdrawal. ``released_at`` is set when the reservation is undone."""

    __tablename__ = "withdrawal_allocations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    withdrawal_id = Column(Uuid, ForeignKey("withdrawals.id"), nullable=False, index=True)
    revenue_id = Column(Uuid, ForeignKey("revenues.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    released_at = Column(DateTime(timezone=True), nullable=True)
