"""WithdrawalBatchProcessor: executes pending withdrawals against the payment processor.

Per withdrawal: claim (pending -> processing), check the connected account,
transfer platform funds to it, then pay out to the bank. Idempotency keys are
derived from the withdrawal id, so a crashed batch re-run never moves money
twice. A payout failing after a successful transfer is not retried: the
withdrawal is flagged for manual intervention.

reconcile_processing() settles withdrawals left in processing by a crash or a
slow payout, using the payout status reported by the processor.
"""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import structlog

from app.core.exceptions import ExternalCallFailedError
from app.db.models.withdrawal import Withdrawal
from app.metrics.cloudwatch import emit_business_event
from app.payments.processor import PaymentProcessor
from app.services.alerting import AlertSeverity, AlertSink, AlertType
from app.withdrawals.service import WithdrawalService

logger = structlog.get_logger(__name__)


class WithdrawalBatchProcessor:
    def __init__(
        self,
        service: WithdrawalService,
        processor: PaymentProcessor,
        alerts: AlertSink | None = None,
        max_concurrent: int = 5,
        batch_size: int = 50,
    ):
        self._service = service
        self._processor = processor
        self._alerts = alerts
        self._max_concurrent = max_concurrent
        self._batch_size = batch_size

    async def process_batch(self, limit: int | None = None) -> list[dict]:
        """Process up to ``limit`` pending withdrawals, oldest first.

        At most ``max_concurrent`` run at once. Outcomes are returned in input
        order; one withdrawal failing never aborts the others.
        """
        pending = await self._service.list_pending(limit or self._batch_size)
        if not pending:
            return []

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def run(withdrawal: Withdrawal) -> dict:
            async with semaphore:
                return await self._process_one(withdrawal)

        gathered = await asyncio.gather(*(run(w) for w in pending), return_exceptions=True)

        outcomes = []
        for withdrawal, result in zip(pending, gathered):
            if isinstance(result, Exception):
                logger.error(
                    "withdrawal_processing_crashed",
                    withdrawal_id=str(withdrawal.id),
                    error=str(result),
                    error_type=type(result).__name__,
                    exc_info=result,
                )
                result = _outcome(withdrawal.id, error="Internal error while processing withdrawal")
            outcomes.append(result)

        succeeded = sum(1 for outcome in outcomes if outcome["success"])
        logger.info("withdrawal_batch_processed", total=len(outcomes), succeeded=succeeded, failed=len(outcomes) - succeeded)
        return outcomes

    async def _process_one(self, withdrawal: Withdrawal) -> dict:
        withdrawal_id = withdrawal.id
        log = logger.bind(withdrawal_id=str(withdrawal_id), user_id=withdrawal.user_id)

        if not await self._service.claim_for_processing(withdrawal_id):
            log.info("withdrawal_already_claimed")
            return _outcome(withdrawal_id, error="Withdrawal already claimed")

        account_id = await self._service.payout_account(withdrawal.user_id)
        if not account_id:
            return await self._fail(withdrawal, "No connected payout account", AlertType.WITHDRAWAL_FAILED)

        try:
            account = await self._processor.retrieve_account(account_id)
        except ExternalCallFailedError as exc:
            return await self._fail(withdrawal, exc.message, AlertType.STRIPE_ERROR)
        if not account.payouts_enabled:
            return await self._fail(withdrawal, "Payouts are disabled on the connected account", AlertType.WITHDRAWAL_FAILED)

        metadata = {"withdrawal_id": str(withdrawal_id), "user_id": withdrawal.user_id}
        try:
            transfer_id = await self._processor.create_transfer(
                amount=withdrawal.amount,
                currency=withdrawal.currency,
                destination=account_id,
                transfer_group=str(withdrawal_id),
                metadata=metadata,
                idempotency_key=f"withdrawal-{withdrawal_id}-transfer",
            )
        except ExternalCallFailedError as exc:
            return await self._fail(withdrawal, exc.message, AlertType.TRANSFER_FAILED)
        await self._service.record_transfer(withdrawal_id, transfer_id)

        try:
            payout_id = await self._processor.create_payout(
                amount=withdrawal.amount,
                currency=withdrawal.currency,
                account_id=account_id,
                metadata=metadata,
                idempotency_key=f"withdrawal-{withdrawal_id}-payout",
            )
        except ExternalCallFailedError as exc:
            await self._service.flag_manual_intervention(withdrawal_id, f"Payout failed after transfer {transfer_id}: {exc.message}")
            return _outcome(withdrawal_id, transfer_id=transfer_id, error=exc.message)
        await self._service.record_payout(withdrawal_id, payout_id)

        log.info("withdrawal_paid_out", transfer_id=transfer_id, payout_id=payout_id)
        await emit_business_event("withdrawal_processed", Outcome="paid_out")
        return _outcome(withdrawal_id, success=True, transfer_id=transfer_id, payout_id=payout_id)

    async def reconcile_processing(self, older_than_minutes: int = 60, limit: int | None = None) -> dict:
        """Settle withdrawals stuck in ``processing`` whose payout webhook never arrived.

        The payout status is read back from the processor: ``paid`` completes
        the withdrawal, ``failed``/``canceled`` fails it and releases the
        reservation, anything else is still in flight. A withdrawal without a
        payout id cannot be settled automatically and is flagged for review.
        """
        cutoff = datetime.now(UTC) - timedelta(minutes=older_than_minutes)
        stuck = await self._service.list_stale_processing(cutoff, limit or self._batch_size)
        summary = {"checked": len(stuck), "completed": 0, "failed": 0, "flagged": 0, "in_flight": 0, "errors": 0}

        for withdrawal in stuck:
            log = logger.bind(withdrawal_id=str(withdrawal.id), transfer_id=withdrawal.transfer_id, payout_id=withdrawal.payout_id)

            if not withdrawal.payout_id:
                if withdrawal.transfer_id:
                    reason = f"Transfer {withdrawal.transfer_id} has no payout after {older_than_minutes} minutes"
                    title = "Payout missing after transfer"
                else:
                    reason = f"No transfer recorded after {older_than_minutes} minutes in processing"
                    title = "Withdrawal stuck before transfer"
                await self._service.flag_manual_intervention(
                    withdrawal.id, reason, alert_type=AlertType.WITHDRAWAL_STUCK, title=title
                )
                summary["flagged"] += 1
                continue

            account_id = await self._service.payout_account(withdrawal.user_id)
            try:
                payout = await self._processor.retrieve_payout(withdrawal.payout_id, account_id or "")
            except ExternalCallFailedError as exc:
                log.warning("withdrawal_reconcile_lookup_failed", error=exc.message, error_code=exc.error_code)
                summary["errors"] += 1
                continue

            match payout.status:
                case "paid":
                    if await self._service.confirm_success(withdrawal.id):
                        summary["completed"] += 1
                case "failed" | "canceled":
                    reason = payout.failure_message or f"Payout {payout.status}"
                    if await self._service.confirm_failure(withdrawal.id, reason):
                        summary["failed"] += 1
                case _:
                    summary["in_flight"] += 1
            log.info("withdrawal_reconciled", payout_status=payout.status)

        logger.info("withdrawal_reconcile_complete", **summary)
        return summary

    async def _fail(self, withdrawal: Withdrawal, reason: str, alert_type: AlertType) -> dict:
        await self._service.confirm_failure(withdrawal.id, reason)
        if self._alerts is not None:
            await self._alerts.send(
                alert_type,
                AlertSeverity.ERROR,
                "Withdrawal failed",
                reason,
                {"withdrawal_id": str(withdrawal.id), "user_id": withdrawal.user_id, "amount": str(withdrawal.amount)},
            )
        return _outcome(withdrawal.id, error=reason)


def _outcome(
    withdrawal_id: uuid.UUID,
    success: bool = False,
    transfer_id: str | None = None,
    payout_id: str | None = None,
    error: str | None = None,
) -> dict:
    return {
        "id": str(withdrawal_id),
        "success": success,
        "transfer_id": transfer_id,
        "payout_id": payout_id,
        "error": error,
    }
