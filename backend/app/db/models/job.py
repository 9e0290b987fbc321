"""Job model: the relational work-item queue."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid

from app.db.base import Base, JSONType


class Job(Base):
    __tablename__ = "job_queue"
    __table_args__ = (
        Index("ix_job_queue_claim", "status", "priority", "scheduled_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type = Column(String(50), nullable=False, index=True)  # JobType enum values
    payload = Column(JSONType, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)  # higher = more urgent

    status = Column(String(20), nullable=False, default="pending")  # JobStatus enum values
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)

    # Timestamps
    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Audit
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
