"""Signature verification and replay protection for inbound processor events."""

import hashlib
import json

import stripe
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidSignatureError
from app.db.models.processed_webhook import ProcessedWebhook

logger = structlog.get_logger(__name__)


def hash_payload(payload: bytes) -> str:
    """SHA-256 hex digest of the raw request body."""
    return hashlib.sha256(payload).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str, tolerance: int = 300) -> dict:
    """Verify a signed event body and return the parsed event.

    Fails closed: an unconfigured secret rejects everything (503 so the sender
    keeps retrying until the secret is deployed).

    Raises:
        InvalidSignatureError: secret missing, header missing, bad signature, or non-JSON body
    """
    if not secret:
        logger.error("webhook_secret_missing")
        raise InvalidSignatureError("Webhook endpoint is not configured", status_code=503)
    if not signature:
        raise InvalidSignatureError("Missing signature header")

    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret, tolerance)
    except stripe.SignatureVerificationError:
        logger.warning("webhook_signature_invalid")
        raise InvalidSignatureError("Invalid signature")
    except UnicodeDecodeError:
        raise InvalidSignatureError("Invalid payload")

    try:
        event = json.loads(payload)
    except ValueError:
        raise InvalidSignatureError("Invalid payload")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise InvalidSignatureError("Invalid payload")
    return event


async def claim_event(session: AsyncSession, event_id: str, event_type: str, payload_hash: str) -> bool:
    """Atomically check-and-insert the event into the replay table.

    Returns True if the event is new. Must be the first write of the caller's
    transaction: a duplicate rolls the transaction back.
    """
    session.add(ProcessedWebhook(event_id=event_id, event_type=event_type, payload_hash=payload_hash))
    try:
        await session.flush()
        return True
    except IntegrityError:
        await session.rollback()
        logger.info("webhook_duplicate_event_ignored", event_id=event_id, event_type=event_type)
        return False
