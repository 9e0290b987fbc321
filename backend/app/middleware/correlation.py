"""Request correlation ids.

The payment processor does not send X-Request-ID, so every webhook delivery
gets a fresh id. Schedulers may pass their own to tie a cron run to the jobs
it processed; such ids are accepted when short and printable, otherwise
replaced.
"""

import re
import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"

_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def is_acceptable_request_id(value: str) -> bool:
    return bool(_ACCEPTED_ID.match(value))


def setup_correlation_middleware(app: FastAPI) -> None:
    """Echo an acceptable caller X-Request-ID, otherwise issue a UUID4."""
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=is_acceptable_request_id,
    )


def get_correlation_id() -> str | None:
    """Correlation id of the current request, None outside a request."""
    return correlation_id.get(None)


__all__ = ["REQUEST_ID_HEADER", "get_correlation_id", "setup_correlation_middleware"]
