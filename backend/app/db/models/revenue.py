"""Revenue model: per-user balance rows produced by commission distribution."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Numeric, String, Uuid

from app.db.base import Base


class Revenue(Base):
    """A share of an order owed to a seller, an agent, or the platform.

    Lifecycle: pending (hold period) -> available -> withdrawn, or -> reversed on refund.
    ``locked`` rows are reserved by a withdrawal and excluded from the available balance.
    """

    __tablename__ = "revenues"
    __table_args__ = (
        Index("ix_revenues_balance", "user_id", "status", "locked"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(String(255), nullable=True)  # NULL for platform revenue
    revenue_type = Column(String(20), nullable=False)  # seller | agent | platform
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending | available | withdrawn | reversed
    locked = Column(Boolean, nullable=False, default=False)
    available_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))
