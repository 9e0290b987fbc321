"""WebhookEventLog model: durable record of every accepted processor event."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, Uuid

from app.db.base import Base, JSONType


class WebhookEventLog(Base):
    """Accepted event plus its priority and (optional) same-resource prerequisite.

    An event with ``depends_on_event`` set is not processable until the
    referenced event has ``processed = True``.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_resource", "resource_id", "event_type", "processed"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False, index=True)

    # Derived from payload: resource_type = first segment of event_type
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(255), nullable=True)

    event_created = Column(DateTime(timezone=True), nullable=False)  # processor timestamp
    priority = Column(Integer, nullable=False, default=1)
    payload = Column(JSONType, nullable=False, default=dict)  # event data.object

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    depends_on_event = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
