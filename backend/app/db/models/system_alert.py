"""SystemAlert model: persisted operational alerts."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, String, Text, Uuid

from app.db.base import Base, JSONType


class SystemAlert(Base):
    __tablename__ = "system_alerts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    alert_type = Column(String(50), nullable=False, index=True)  # AlertType enum values
    severity = Column(String(20), nullable=False, index=True)  # info | warning | error | critical
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSONType, nullable=False, default=dict)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True)
