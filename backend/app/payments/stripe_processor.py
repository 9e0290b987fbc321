"""Stripe-backed PaymentProcessor.

Uses the stripe SDK's async resource methods with per-call request options
(api_key, idempotency_key, stripe_account) instead of the module-level
``stripe.api_key``, so nothing process-wide is mutated. Every call goes
through the injected RetryPolicy.
"""

from decimal import Decimal

import stripe
import structlog

from app.core.config import get_settings
from app.core.exceptions import ExternalCallFailedError
from app.core.retry import STRIPE_RETRY, RetryPolicy, is_transient_stripe_error
from app.payments.processor import (
    AccountInfo,
    PaymentIntentInfo,
    PaymentProcessor,
    PayoutInfo,
    RefundInfo,
    from_minor_units,
    to_minor_units,
)

logger = structlog.get_logger(__name__)


class StripePaymentProcessor:
    """PaymentProcessor implementation on top of the stripe SDK."""

    def __init__(self, api_key: str, retry_policy: RetryPolicy = STRIPE_RETRY):
        self._api_key = api_key
        self._retry = retry_policy

    async def _call(self, operation: str, fn, *args, **params):
        if not self._api_key:
            raise ExternalCallFailedError(operation, "Stripe secret key is not configured", retryable=False)
        try:
            return await self._retry.call(fn, *args, api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            logger.warning(
                "stripe_call_failed",
                operation=operation,
                error_code=exc.code,
                http_status=exc.http_status,
                error=exc.user_message or str(exc),
            )
            raise ExternalCallFailedError(
                operation,
                exc.user_message or str(exc),
                error_code=exc.code,
                retryable=is_transient_stripe_error(exc),
            ) from exc

    @staticmethod
    def _intent_info(intent) -> PaymentIntentInfo:
        return PaymentIntentInfo(id=intent.id, status=intent.status, amount=from_minor_units(intent.amount))

    async def capture_payment_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentInfo:
        intent = await self._call(
            "capture_payment_intent",
            stripe.PaymentIntent.capture_async,
            intent_id,
            idempotency_key=idempotency_key,
        )
        return self._intent_info(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        intent = await self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve_async, intent_id)
        return self._intent_info(intent)

    async def cancel_payment_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentInfo:
        intent = await self._call(
            "cancel_payment_intent",
            stripe.PaymentIntent.cancel_async,
            intent_id,
            idempotency_key=idempotency_key,
        )
        return self._intent_info(intent)

    async def refund_payment_intent(
        self,
        intent_id: str,
        idempotency_key: str,
        amount: Decimal | None = None,
        reason: str = "requested_by_customer",
    ) -> RefundInfo:
        params = {"payment_intent": intent_id, "reason": reason}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        refund = await self._call(
            "refund_payment_intent",
            stripe.Refund.create_async,
            idempotency_key=idempotency_key,
            **params,
        )
        return RefundInfo(id=refund.id, status=refund.status, amount=from_minor_units(refund.amount))

    async def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        transfer_group: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        transfer = await self._call(
            "create_transfer",
            stripe.Transfer.create_async,
            amount=to_minor_units(amount),
            currency=currency,
            destination=destination,
            transfer_group=transfer_group,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return transfer.id

    async def create_payout(
        self,
        amount: Decimal,
        currency: str,
        account_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        payout = await self._call(
            "create_payout",
            stripe.Payout.create_async,
            amount=to_minor_units(amount),
            currency=currency,
            metadata=metadata,
            stripe_account=account_id,
            idempotency_key=idempotency_key,
        )
        return payout.id

    async def retrieve_account(self, account_id: str) -> AccountInfo:
        account = await self._call("retrieve_account", stripe.Account.retrieve_async, account_id)
        return AccountInfo(
            id=account.id,
            charges_enabled=bool(account.charges_enabled),
            payouts_enabled=bool(account.payouts_enabled),
        )

    async def retrieve_payout(self, payout_id: str, account_id: str) -> PayoutInfo:
        payout = await self._call(
            "retrieve_payout",
            stripe.Payout.retrieve_async,
            payout_id,
            stripe_account=account_id,
        )
        return PayoutInfo(
            id=payout.id,
            status=payout.status,
            failure_message=payout.failure_message or payout.failure_code,
        )


def get_payment_processor() -> PaymentProcessor:
    """FastAPI dependency: a processor bound to the configured secret key."""
    return StripePaymentProcessor(api_key=get_settings().stripe_secret_key)
