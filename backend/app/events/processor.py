"""WebhookEventProcessor: applies one logged processor event to orders, withdrawals and payout profiles.

Runs inside a process_webhook job. The business effect and the event's
``processed`` flag commit together; on failure the effect is rolled back,
the error is recorded on the event and re-raised for the worker's retry
bookkeeping. Alerts are sent only after the transaction has committed.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import DependencyUnresolvedError
from app.db.models.payout_profile import PayoutProfile
from app.events.log import EventLog
from app.orders.service import OrderService
from app.payments.processor import from_minor_units
from app.services.alerting import AlertSeverity, AlertSink, AlertType
from app.withdrawals.service import WithdrawalService

logger = structlog.get_logger(__name__)


class WebhookEventProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_log: EventLog,
        orders: OrderService,
        withdrawals: WithdrawalService,
        alerts: AlertSink | None = None,
    ):
        self._session_factory = session_factory
        self._event_log = event_log
        self._orders = orders
        self._withdrawals = withdrawals
        self._alerts = alerts
        self._handlers = {
            "payment_intent.amount_capturable_updated": self._on_amount_capturable_updated,
            "payment_intent.succeeded": self._on_payment_succeeded,
            "payment_intent.payment_failed": self._on_payment_failed,
            "payment_intent.canceled": self._on_payment_canceled,
            "charge.refunded": self._on_charge_refunded,
            "charge.dispute.created": self._on_dispute_created,
            "charge.dispute.closed": self._on_dispute_closed,
            "checkout.session.completed": self._on_checkout_session,
            "checkout.session.expired": self._on_checkout_session,
            "payout.paid": self._on_payout_paid,
            "payout.failed": self._on_payout_failed,
            "payout.canceled": self._on_payout_failed,
            "account.updated": self._on_account_updated,
        }

    async def process(self, payload: dict) -> bool:
        """Apply the event in a process_webhook job payload.

        Returns False when the event was already processed (nothing done).

        Raises:
            DependencyUnresolvedError: a prerequisite event is still unprocessed
        """
        event_id = payload["event_id"]
        event_type = payload["event_type"]
        data_object = (payload.get("data") or {}).get("object") or {}
        log = logger.bind(event_id=event_id, event_type=event_type)

        pending_alerts: list[tuple] = []
        async with self._session_factory() as session:
            entry = await self._event_log.get(session, event_id)
            if entry is not None and entry.processed:
                log.info("webhook_event_already_processed")
                return False
            if entry is not None and not await self._event_log.can_process(session, event_id):
                raise DependencyUnresolvedError(event_id, entry.depends_on_event)

            handler = self._handlers.get(event_type)
            try:
                if handler is None:
                    log.info("webhook_event_unhandled")
                else:
                    await handler(session, data_object, pending_alerts)
                await self._event_log.mark_processed(session, event_id)
                await session.commit()
            except Exception as exc:
                await session.rollback()
                await self._record_failure(event_id, exc)
                raise

        log.info("webhook_event_processed")
        for alert in pending_alerts:
            if self._alerts is not None:
                await self._alerts.send(*alert)
        return True

    async def _record_failure(self, event_id: str, exc: Exception) -> None:
        async with self._session_factory() as session:
            await self._event_log.mark_failed(session, event_id, f"{type(exc).__name__}: {exc}")
            await session.commit()
        logger.warning("webhook_event_failed", event_id=event_id, error=str(exc), error_type=type(exc).__name__)

    # ── Payment intents ─────────────────────────────────────────────

    async def _on_amount_capturable_updated(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        await self._orders.record_authorization(session, obj["id"])

    async def _on_payment_succeeded(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        await self._orders.record_capture(session, obj["id"])

    async def _on_payment_failed(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        order = await self._orders.record_payment_failure(session, obj["id"])
        if order is not None:
            error = obj.get("last_payment_error") or {}
            logger.info("payment_failed", order_id=str(order.id), decline_code=error.get("decline_code"))

    async def _on_payment_canceled(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        await self._orders.record_intent_canceled(session, obj["id"])

    # ── Charges & disputes ──────────────────────────────────────────

    async def _on_charge_refunded(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        intent_id = obj.get("payment_intent")
        if not intent_id:
            logger.warning("refund_without_payment_intent", charge_id=obj.get("id"))
            return
        amount_refunded = from_minor_units(obj.get("amount_refunded")) or from_minor_units(obj.get("amount"))
        # Latest refund first in the embedded list
        refunds = (obj.get("refunds") or {}).get("data") or []
        refund_id = refunds[0]["id"] if refunds else f"{obj.get('id')}-{obj.get('amount_refunded')}"
        await self._orders.record_refund(session, intent_id, refund_id, amount_refunded)

    async def _on_dispute_created(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        intent_id = obj.get("payment_intent")
        order = await self._orders.open_dispute(session, intent_id, reason=obj.get("reason")) if intent_id else None
        alerts.append((
            AlertType.DISPUTE_OPENED,
            AlertSeverity.CRITICAL,
            "Payment dispute opened",
            f"Dispute {obj.get('id')} opened with reason '{obj.get('reason')}'",
            {
                "dispute_id": obj.get("id"),
                "payment_intent_id": intent_id,
                "order_id": str(order.id) if order is not None else None,
                "amount": str(from_minor_units(obj.get("amount"))),
            },
        ))

    async def _on_dispute_closed(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        logger.info("dispute_closed", dispute_id=obj.get("id"), dispute_status=obj.get("status"))

    async def _on_checkout_session(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        logger.info("checkout_session_event", checkout_session_id=obj.get("id"), payment_intent_id=obj.get("payment_intent"))

    # ── Payouts & accounts ──────────────────────────────────────────

    async def _on_payout_paid(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        withdrawal = await self._withdrawals.find_by_payout(session, obj["id"], (obj.get("metadata") or {}).get("withdrawal_id"))
        if withdrawal is not None:
            await self._withdrawals.complete(session, withdrawal.id)

    async def _on_payout_failed(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        withdrawal = await self._withdrawals.find_by_payout(session, obj["id"], (obj.get("metadata") or {}).get("withdrawal_id"))
        if withdrawal is None:
            return
        reason = obj.get("failure_message") or f"Payout {obj.get('status', 'failed')}"
        if await self._withdrawals.fail(session, withdrawal.id, reason):
            alerts.append((
                AlertType.PAYOUT_FAILED,
                AlertSeverity.ERROR,
                "Payout failed",
                reason,
                {"withdrawal_id": str(withdrawal.id), "payout_id": obj["id"], "failure_code": obj.get("failure_code")},
            ))

    async def _on_account_updated(self, session: AsyncSession, obj: dict, alerts: list) -> None:
        charges_enabled = bool(obj.get("charges_enabled"))
        payouts_enabled = bool(obj.get("payouts_enabled"))
        result = await session.execute(
            update(PayoutProfile)
            .where(PayoutProfile.stripe_account_id == obj["id"])
            .values(
                charges_enabled=charges_enabled,
                payouts_enabled=payouts_enabled,
                onboarding_completed=charges_enabled and payouts_enabled,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("payout_profile_not_found_for_account", account_id=obj["id"])
