"""ProcessedWebhook model: replay table for inbound processor events."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from app.db.base import Base


class ProcessedWebhook(Base):
    """One row per accepted event id. The primary key makes check-and-insert atomic."""

    __tablename__ = "processed_webhooks"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    payload_hash = Column(String(64), nullable=False)  # SHA-256 hex of the raw body
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )
