"""PaymentProcessorFake: scenario-based test double for the PaymentProcessor protocol.

Named scenarios:
- happy_path: every call succeeds
- processor_down: every call fails with a retryable error
- transfer_failure: transfers are rejected (non-retryable)
- payout_failure: transfers succeed, payouts are rejected
- refund_failure: refunds and cancellations are rejected

Behaves like the real processor where the backbone depends on it: captures of
an already-succeeded intent fail with ``payment_intent_unexpected_state``, and
a repeated idempotency key returns the first result without a second side
effect. ``delay`` makes every call await, so concurrency limits are observable
through ``max_in_flight``.
"""

import asyncio
import itertools
from decimal import Decimal

from app.core.exceptions import ExternalCallFailedError
from app.payments.processor import AccountInfo, PaymentIntentInfo, PayoutInfo, RefundInfo


class PaymentProcessorFake:
    """In-memory PaymentProcessor with deterministic ids."""

    VALID_SCENARIOS = {"happy_path", "processor_down", "transfer_failure", "payout_failure", "refund_failure"}

    _FAILING_OPERATIONS = {
        "happy_path": set(),
        "processor_down": {
            "capture_payment_intent",
            "retrieve_payment_intent",
            "cancel_payment_intent",
            "refund_payment_intent",
            "create_transfer",
            "create_payout",
            "retrieve_account",
            "retrieve_payout",
        },
        "transfer_failure": {"create_transfer"},
        "payout_failure": {"create_payout"},
        "refund_failure": {"refund_payment_intent", "cancel_payment_intent"},
    }

    def __init__(self, scenario: str = "happy_path", delay: float = 0.0):
        """Initialize with a named scenario.

        Raises:
            ValueError: If scenario is not recognized
        """
        if scenario not in self.VALID_SCENARIOS:
            raise ValueError(f"Unknown scenario: {scenario}. Valid scenarios: {self.VALID_SCENARIOS}")
        self.scenario = scenario
        self.delay = delay

        self.intents: dict[str, str] = {}
        self.accounts: dict[str, AccountInfo] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.transfers: list[dict] = []
        self.payouts: list[dict] = []
        self.payout_status: dict[str, PayoutInfo] = {}
        self.refunds: list[dict] = []

        self.in_flight = 0
        self.max_in_flight = 0

        self._by_key: dict[str, object] = {}
        self._ids = itertools.count(1)

    # ── Test setup helpers ──────────────────────────────────────────

    def set_intent(self, intent_id: str, status: str) -> None:
        self.intents[intent_id] = status

    def set_account(self, account_id: str, payouts_enabled: bool = True, charges_enabled: bool = True) -> None:
        self.accounts[account_id] = AccountInfo(
            id=account_id,
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
        )

    def set_payout(self, payout_id: str, status: str, failure_message: str | None = None) -> None:
        self.payout_status[payout_id] = PayoutInfo(id=payout_id, status=status, failure_message=failure_message)

    # ── Internals ───────────────────────────────────────────────────

    async def _enter(self, operation: str, idempotency_key: str | None = None):
        self.calls.append((operation, idempotency_key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if operation in self._FAILING_OPERATIONS[self.scenario]:
            retryable = self.scenario == "processor_down"
            raise ExternalCallFailedError(
                operation,
                "Simulated processor failure",
                error_code="api_error" if retryable else "invalid_request",
                retryable=retryable,
            )
        if idempotency_key is not None and idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        return None

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._ids)}"

    # ── PaymentProcessor ────────────────────────────────────────────

    async def capture_payment_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentInfo:
        cached = await self._enter("capture_payment_intent", idempotency_key)
        if cached is not None:
            return cached
        status = self.intents.get(intent_id, "requires_capture")
        if status != "requires_capture":
            raise ExternalCallFailedError(
                "capture_payment_intent",
                f"This PaymentIntent could not be captured because it has a status of {status}.",
                error_code="payment_intent_unexpected_state",
                retryable=False,
            )
        self.intents[intent_id] = "succeeded"
        result = PaymentIntentInfo(id=intent_id, status="succeeded")
        self._by_key[idempotency_key] = result
        return result

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        await self._enter("retrieve_payment_intent")
        return PaymentIntentInfo(id=intent_id, status=self.intents.get(intent_id, "requires_payment_method"))

    async def cancel_payment_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentInfo:
        cached = await self._enter("cancel_payment_intent", idempotency_key)
        if cached is not None:
            return cached
        self.intents[intent_id] = "canceled"
        result = PaymentIntentInfo(id=intent_id, status="canceled")
        self._by_key[idempotency_key] = result
        return result

    async def refund_payment_intent(
        self,
        intent_id: str,
        idempotency_key: str,
        amount: Decimal | None = None,
        reason: str = "requested_by_customer",
    ) -> RefundInfo:
        cached = await self._enter("refund_payment_intent", idempotency_key)
        if cached is not None:
            return cached
        result = RefundInfo(id=self._next_id("re"), status="succeeded", amount=amount or Decimal("0.00"))
        self.refunds.append({"id": result.id, "payment_intent": intent_id, "amount": amount, "reason": reason})
        self._by_key[idempotency_key] = result
        return result

    async def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        transfer_group: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        cached = await self._enter("create_transfer", idempotency_key)
        if cached is not None:
            return cached
        transfer_id = self._next_id("tr")
        self.transfers.append({
            "id": transfer_id,
            "amount": amount,
            "currency": currency,
            "destination": destination,
            "transfer_group": transfer_group,
            "metadata": metadata,
        })
        self._by_key[idempotency_key] = transfer_id
        return transfer_id

    async def create_payout(
        self,
        amount: Decimal,
        currency: str,
        account_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        cached = await self._enter("create_payout", idempotency_key)
        if cached is not None:
            return cached
        payout_id = self._next_id("po")
        self.payouts.append({
            "id": payout_id,
            "amount": amount,
            "currency": currency,
            "account_id": account_id,
            "metadata": metadata,
        })
        self._by_key[idempotency_key] = payout_id
        self.payout_status[payout_id] = PayoutInfo(id=payout_id, status="pending")
        return payout_id

    async def retrieve_account(self, account_id: str) -> AccountInfo:
        await self._enter("retrieve_account")
        return self.accounts.get(
            account_id,
            AccountInfo(id=account_id, charges_enabled=True, payouts_enabled=True),
        )

    async def retrieve_payout(self, payout_id: str, account_id: str) -> PayoutInfo:
        await self._enter("retrieve_payout")
        if payout_id not in self.payout_status:
            raise ExternalCallFailedError(
                "retrieve_payout",
                f"No such payout: '{payout_id}'",
                error_code="resource_missing",
                retryable=False,
            )
        return self.payout_status[payout_id]
