"""PayoutProfile model: a user's payout role and connected processor account."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, String

from app.db.base import Base

PAYOUT_ROLES = frozenset({"freelance", "influencer", "agent"})


class PayoutProfile(Base):
    __tablename__ = "payout_profiles"

    user_id = Column(String(255), primary_key=True)
    role = Column(String(30), nullable=False, default="buyer")  # buyer | freelance | influencer | agent
    is_active = Column(Boolean, nullable=False, default=True)

    # Connected account on the payment processor (updated by account.updated events)
    stripe_account_id = Column(String(255), nullable=True, unique=True)
    charges_enabled = Column(Boolean, nullable=False, default=False)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    onboarding_completed = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))
