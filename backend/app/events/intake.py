"""EventIntake: verified, replay-safe ingestion of processor events.

Claim, event-log insert and job enqueue share one transaction. If anything
fails the replay row is rolled back with it, so the sender's retry is
accepted instead of being mistaken for a duplicate.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import BusinessRuleError, NotFoundError
from app.events.gate import claim_event, hash_payload, verify_signature
from app.events.log import RELEVANT_EVENTS, EventLog
from app.metrics.cloudwatch import emit_business_event
from app.queue.manager import JobQueue
from app.queue.schemas import JobType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    event_type: str
    is_new: bool
    job_id: uuid.UUID | None = None


def _epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


class EventIntake:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        event_log: EventLog,
        webhook_secret: str,
        tolerance_seconds: int = 300,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._event_log = event_log
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds

    async def ingest(self, payload: bytes, signature: str | None) -> IngestResult:
        """Verify, deduplicate, log and (for relevant types) enqueue an event.

        Raises:
            InvalidSignatureError: verification failed; nothing is recorded
        """
        event = verify_signature(payload, signature, self._secret, self._tolerance)
        event_id = event["id"]
        event_type = event["type"]

        async with self._session_factory() as session:
            if not await claim_event(session, event_id, event_type, hash_payload(payload)):
                return IngestResult(event_id=event_id, event_type=event_type, is_new=False)

            # The replay row expires; the event log does not
            if await self._event_log.get(session, event_id) is not None:
                await session.commit()
                logger.info("webhook_duplicate_event_ignored", event_id=event_id, event_type=event_type, source="event_log")
                return IngestResult(event_id=event_id, event_type=event_type, is_new=False)

            try:
                entry = await self._event_log.record(session, event)
            except IntegrityError:
                await session.rollback()
                logger.info("webhook_duplicate_event_ignored", event_id=event_id, event_type=event_type, source="event_log")
                return IngestResult(event_id=event_id, event_type=event_type, is_new=False)

            job_id = None
            if event_type in RELEVANT_EVENTS:
                job_id = await self._queue.enqueue(
                    JobType.PROCESS_WEBHOOK,
                    {
                        "event_id": event_id,
                        "event_type": event_type,
                        "data": event.get("data", {}),
                        "created": event.get("created"),
                    },
                    priority=entry.priority,
                    session=session,
                )
            else:
                logger.info("webhook_event_not_queued", event_id=event_id, event_type=event_type)

            await session.commit()

        logger.info("webhook_accepted", event_id=event_id, event_type=event_type, job_id=str(job_id) if job_id else None)
        await emit_business_event("webhook_received", EventType=event_type)
        return IngestResult(event_id=event_id, event_type=event_type, is_new=True, job_id=job_id)

    async def replay(self, event_id: str, force: bool = False) -> uuid.UUID:
        """Queue a logged event for processing again. Returns the new job id."""
        async with self._session_factory() as session:
            entry = await self._event_log.get(session, event_id)
            if entry is None:
                raise NotFoundError(f"Event {event_id} not found")
            if entry.processed and not force:
                raise BusinessRuleError(f"Event {event_id} was already processed; replay with force=true")

            await self._event_log.reset(session, event_id)
            job_id = await self._queue.enqueue(
                JobType.PROCESS_WEBHOOK,
                {
                    "event_id": entry.event_id,
                    "event_type": entry.event_type,
                    "data": {"object": entry.payload},
                    "created": _epoch(entry.event_created),
                },
                priority=entry.priority,
                session=session,
            )
            await session.commit()

        logger.info("webhook_replayed", event_id=event_id, force=force, job_id=str(job_id))
        return job_id
