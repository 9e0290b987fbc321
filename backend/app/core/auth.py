"""Request authentication for FastAPI.

Two callers reach this service:
- the scheduler (cron) invoking worker endpoints with a shared secret header
- end users, already authenticated by the upstream gateway, which forwards
  the user id in ``X-Actor-Id``
"""

import hmac
from dataclasses import dataclass

import structlog
from fastapi import Header, HTTPException, Request

from app.core.config import get_settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """Authenticated end user on whose behalf an order or withdrawal action runs."""

    user_id: str


async def require_worker_secret(
    request: Request,
    x_worker_secret: str | None = Header(default=None),
) -> None:
    """Guard for scheduler-invoked endpoints. Fails closed when no secret is configured."""
    settings = get_settings()
    if not settings.worker_secret:
        logger.error("worker_secret_missing", path=request.url.path)
        raise HTTPException(status_code=503, detail="Worker endpoint is not configured")

    if not x_worker_secret:
        raise HTTPException(status_code=401, detail="Missing X-Worker-Secret header")

    if not hmac.compare_digest(x_worker_secret.encode(), settings.worker_secret.encode()):
        logger.warning("worker_secret_mismatch", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid worker secret")


async def require_actor(
    request: Request,
    x_actor_id: str | None = Header(default=None),
) -> Actor:
    """Return the gateway-authenticated user, or 401."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    user_id = x_actor_id.strip()
    request.state.user_id = user_id
    return Actor(user_id=user_id)
