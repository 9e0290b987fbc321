"""Retry policies for external calls.

One ``RetryPolicy`` object is injected wherever an external call is made
(payment processor, relational store). Delays grow as
``base_delay * 2 ** (attempt - 1)``, capped at ``max_delay``, plus 0-25%
random jitter. Only errors accepted by the policy's ``retryable`` predicate
are retried; everything else propagates on the first attempt.
"""

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import stripe
import structlog
from sqlalchemy.exc import OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _always(exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter and a retryable-error predicate."""

    name: str
    max_attempts: int
    base_delay: float
    max_delay: float
    jitter: float = 0.25
    retryable: Callable[[BaseException], bool] = field(default=_always)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retrying_after_error",
            policy=self.name,
            attempt=retry_state.attempt_number,
            sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``fn(*args, **kwargs)``, retrying per this policy. Re-raises the last error."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.retryable),
            reraise=True,
            before_sleep=self._before_sleep,
        ):
            with attempt:
                return await fn(*args, **kwargs)
        raise RuntimeError("unreachable")  # AsyncRetrying always returns or re-raises


def is_transient_stripe_error(exc: BaseException) -> bool:
    """Network failures, timeouts, rate limits and 5xx responses are worth retrying."""
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return True
    if isinstance(exc, stripe.StripeError):
        return exc.http_status is not None and exc.http_status >= 500
    return isinstance(exc, TimeoutError)


def is_transient_db_error(exc: BaseException) -> bool:
    return isinstance(exc, OperationalError)


STRIPE_RETRY = RetryPolicy(
    name="stripe",
    max_attempts=4,
    base_delay=2.0,
    max_delay=16.0,
    retryable=is_transient_stripe_error,
)

DB_RETRY = RetryPolicy(
    name="database",
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable=is_transient_db_error,
)

# Backoff applied between job attempts (scheduled_at is pushed out by this delay)
JOB_BACKOFF = RetryPolicy(
    name="job",
    max_attempts=3,
    base_delay=10.0,
    max_delay=300.0,
)
