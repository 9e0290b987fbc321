"""Inbound payment-processor events."""

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import get_backbone
from app.services.backbone import Backbone

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/payment-events")
async def payment_events(
    request: Request,
    signature: str | None = Header(default=None),
    stripe_signature: str | None = Header(default=None),
    backbone: Backbone = Depends(get_backbone),
):
    """Verify, deduplicate and queue a processor event.

    A 2xx tells the sender to stop retrying, so it is returned only once the
    event is durably queued (or was already seen).
    """
    body = await request.body()
    try:
        result = await backbone.intake.ingest(body, signature or stripe_signature)
    except SQLAlchemyError as exc:
        logger.error("webhook_queueing_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to queue event")

    if not result.is_new:
        return {"received": True, "duplicate": True}
    return {"received": True, "event_id": result.event_id}
