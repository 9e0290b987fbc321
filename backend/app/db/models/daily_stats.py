"""DailyStats model: one aggregated row per UTC day, written by the sync_analytics job."""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Column, Date, DateTime, Integer, Numeric

from app.db.base import Base


class DailyStats(Base):
    __tablename__ = "daily_stats"

    stat_date = Column(Date, primary_key=True)
    orders_created = Column(Integer, nullable=False, default=0)
    orders_completed = Column(Integer, nullable=False, default=0)
    orders_cancelled = Column(Integer, nullable=False, default=0)
    gross_volume = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))  # total of completed orders
    platform_revenue = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    refunded_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    withdrawals_completed = Column(Integer, nullable=False, default=0)
    withdrawn_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))
