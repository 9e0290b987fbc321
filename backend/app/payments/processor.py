"""PaymentProcessor Protocol: the testable abstraction over the payment processor API.

Business logic (order capture/cancel/refund, withdrawal transfers and payouts)
depends on this protocol, never on the stripe module directly, so tests
substitute ``PaymentProcessorFake``.

Every mutating call takes a caller-supplied idempotency key: retrying the same
logical operation with the same key produces the side effect exactly once.
Failures are raised as ``ExternalCallFailedError`` carrying the processor's
error code.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class PaymentIntentInfo:
    id: str
    status: str  # requires_payment_method | requires_capture | succeeded | canceled | ...
    amount: Decimal | None = None


@dataclass(frozen=True)
class RefundInfo:
    id: str
    status: str
    amount: Decimal


@dataclass(frozen=True)
class PayoutInfo:
    id: str
    status: str  # pending | in_transit | paid | failed | canceled
    failure_message: str | None = None


@dataclass(frozen=True)
class AccountInfo:
    id: str
    charges_enabled: bool
    payouts_enabled: bool


@runtime_checkable
class PaymentProcessor(Protocol):
    """Operations the backbone needs from the payment processor."""

    async def capture_payment_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentInfo:
        """Capture a manually-captured (escrow) payment intent."""
        ...

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        ...

    async def cancel_payment_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentInfo:
        """Release an uncaptured authorization."""
        ...

    async def refund_payment_intent(
        self,
        intent_id: str,
        idempotency_key: str,
        amount: Decimal | None = None,
        reason: str = "requested_by_customer",
    ) -> RefundInfo:
        """Refund a captured intent, fully when ``amount`` is None."""
        ...

    async def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        transfer_group: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """Move funds from the platform balance to a connected account. Returns the transfer id."""
        ...

    async def create_payout(
        self,
        amount: Decimal,
        currency: str,
        account_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """Pay out from a connected account to its bank. Returns the payout id."""
        ...

    async def retrieve_account(self, account_id: str) -> AccountInfo:
        ...

    async def retrieve_payout(self, payout_id: str, account_id: str) -> PayoutInfo:
        """Current state of a payout made on a connected account."""
        ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(value: int | None) -> Decimal | None:
    if value is None:
        return None
    return (Decimal(value) / 100).quantize(Decimal("0.01"))
