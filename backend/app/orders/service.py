"""OrderService: order lifecycle operations for actors, processor events and schedules.

Actor-facing operations (accept, deliver, complete, cancel, ...) own their
transaction. Event-driven operations (record_authorization, record_capture,
record_refund, ...) join the caller's session so the webhook processor can
mark the event processed in the same transaction as its effect.

Processor calls never run while an order row is locked: the order is read,
the processor is called with a deterministic idempotency key, and the
transition is applied afterwards under a fresh lock.
"""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    BusinessRuleError,
    EscrowError,
    ExternalCallFailedError,
    InvalidStateTransitionError,
    PermissionDeniedError,
)
from app.db.models.order import Order
from app.metrics.cloudwatch import emit_business_event
from app.orders.state_machine import (
    CANCELLABLE_STATUSES,
    OrderStateMachine,
    OrderStatus,
    PaymentStatus,
)
from app.payments.processor import PaymentProcessor
from app.queue.manager import JobQueue
from app.queue.schemas import (
    PRIORITY_DISTRIBUTE_COMMISSIONS,
    PRIORITY_NOTIFICATION,
    PRIORITY_REVERSE_COMMISSIONS,
    JobType,
)
from app.services.alerting import AlertSeverity, AlertSink, AlertType

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

# Intent states that still hold an uncaptured authorization (or nothing yet)
_CANCELABLE_INTENT_STATES = frozenset({
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
    "processing",
})

DISPUTE_OUTCOMES = {
    "completed": OrderStatus.COMPLETED,
    "refunded": OrderStatus.REFUNDED,
    "cancelled": OrderStatus.CANCELLED,
}


class OrderService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: PaymentProcessor,
        queue: JobQueue,
        alerts: AlertSink | None = None,
        acceptance_window_hours: int = 48,
    ):
        self._session_factory = session_factory
        self._processor = processor
        self._queue = queue
        self._alerts = alerts
        self._acceptance_window = timedelta(hours=acceptance_window_hours)
        self.state_machine = OrderStateMachine()

    # ── Checkout ────────────────────────────────────────────────────

    async def create_order(
        self,
        buyer_id: str,
        seller_id: str,
        subtotal: Decimal,
        discount_amount: Decimal = Decimal("0.00"),
        agent_id: str | None = None,
        agent_commission_rate: Decimal = Decimal("0.00"),
        agent_platform_cut_rate: Decimal = Decimal("0.00"),
        payment_intent_id: str | None = None,
    ) -> Order:
        """Persist a pending order. total_amount is derived, never supplied."""
        subtotal = Decimal(subtotal).quantize(CENT)
        discount_amount = Decimal(discount_amount).quantize(CENT)
        if subtotal <= 0:
            raise BusinessRuleError("Subtotal must be positive")
        if discount_amount < 0 or discount_amount > subtotal:
            raise BusinessRuleError("Discount must be between zero and the subtotal")
        if buyer_id == seller_id:
            raise BusinessRuleError("Buyer and seller must differ")
        for rate in (agent_commission_rate, agent_platform_cut_rate):
            if not Decimal("0") <= Decimal(rate) <= Decimal("100"):
                raise BusinessRuleError("Commission rates are percentages between 0 and 100")

        order = Order(
            id=uuid.uuid4(),
            buyer_id=buyer_id,
            seller_id=seller_id,
            agent_id=agent_id,
            status=OrderStatus.PENDING.value,
            subtotal=subtotal,
            discount_amount=discount_amount,
            total_amount=subtotal - discount_amount,
            agent_commission_rate=Decimal(agent_commission_rate),
            agent_platform_cut_rate=Decimal(agent_platform_cut_rate),
            payment_intent_id=payment_intent_id,
            payment_status=PaymentStatus.UNPAID.value,
            refund_amount=Decimal("0.00"),
        )
        async with self._session_factory() as session:
            session.add(order)
            await session.commit()

        logger.info("order_created", order_id=str(order.id), total_amount=str(order.total_amount))
        return order

    async def get_order(self, order_id: uuid.UUID) -> Order:
        async with self._session_factory() as session:
            return await self.state_machine.load(session, order_id, lock=False)

    # ── Processor events (caller's session) ─────────────────────────

    async def find_by_intent(self, session: AsyncSession, intent_id: str) -> Order | None:
        result = await session.execute(
            select(Order).where(Order.payment_intent_id == intent_id).with_for_update().execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            logger.warning("order_not_found_for_intent", payment_intent_id=intent_id)
        return order

    async def record_authorization(self, session: AsyncSession, intent_id: str) -> Order | None:
        """Funds are held: pending -> payment_authorized and start the acceptance window."""
        order = await self.find_by_intent(session, intent_id)
        if order is None:
            return None
        await self.state_machine.set_payment_status(session, order, PaymentStatus.AUTHORIZED)
        await self._authorize(session, order)
        return order

    async def record_capture(self, session: AsyncSession, intent_id: str) -> Order | None:
        """Funds captured. A capture seen before its authorization also authorizes the order."""
        order = await self.find_by_intent(session, intent_id)
        if order is None:
            return None
        await self.state_machine.set_payment_status(session, order, PaymentStatus.CAPTURED)
        await self._authorize(session, order)
        return order

    async def _authorize(self, session: AsyncSession, order: Order) -> None:
        if order.status != OrderStatus.PENDING.value:
            logger.debug("order_already_authorized", order_id=str(order.id), status=order.status)
            return
        await self.state_machine.transition(
            session,
            order,
            OrderStatus.PAYMENT_AUTHORIZED,
            reason="payment authorized",
            acceptance_deadline=datetime.now(UTC) + self._acceptance_window,
        )
        await self._notify(
            session,
            order.seller_id,
            "order_received",
            "New order",
            "A paid order is waiting for your acceptance.",
            {"order_id": str(order.id)},
        )

    async def record_payment_failure(self, session: AsyncSession, intent_id: str) -> Order | None:
        order = await self.find_by_intent(session, intent_id)
        if order is None:
            return None
        await self.state_machine.set_payment_status(session, order, PaymentStatus.FAILED)
        return order

    async def record_intent_canceled(self, session: AsyncSession, intent_id: str) -> Order | None:
        """Authorization released: cancel the order if work has not been accepted."""
        order = await self.find_by_intent(session, intent_id)
        if order is None:
            return None
        await self.state_machine.set_payment_status(session, order, PaymentStatus.CANCELED)
        if order.status in (OrderStatus.PENDING.value, OrderStatus.PAYMENT_AUTHORIZED.value):
            await self.state_machine.transition(
                session,
                order,
                OrderStatus.CANCELLED,
                reason="payment intent canceled",
                cancellation_reason="Payment authorization was canceled",
            )
        return order

    async def record_refund(
        self,
        session: AsyncSession,
        intent_id: str,
        refund_id: str,
        amount_refunded: Decimal,
    ) -> Order | None:
        """Apply a (cumulative) refunded amount reported by the processor.

        The reverse_commissions job is enqueued before the order is marked
        refunded, in the same transaction, so a distributed order can never be
        refunded without its ledger reversal being queued.
        """
        order = await self.find_by_intent(session, intent_id)
        if order is None:
            return None

        amount_refunded = Decimal(amount_refunded).quantize(CENT)
        previously_refunded = Decimal(order.refund_amount or 0)
        delta = amount_refunded - previously_refunded
        if delta <= 0:
            logger.info("refund_already_recorded", order_id=str(order.id), refund_id=refund_id)
            return order

        if order.completed_at is not None:
            await self._queue.enqueue(
                JobType.REVERSE_COMMISSIONS,
                {"order_id": str(order.id), "refund_id": refund_id, "amount": str(delta)},
                priority=PRIORITY_REVERSE_COMMISSIONS,
                session=session,
            )

        full = amount_refunded >= Decimal(order.total_amount)
        order.refund_amount = amount_refunded
        order.refund_status = "full" if full else "partial"
        await session.flush()

        if full:
            await self.state_machine.set_payment_status(session, order, PaymentStatus.REFUNDED)
            current = OrderStatus(order.status)
            if self.state_machine.can_transition(current, OrderStatus.REFUNDED):
                await self.state_machine.transition(session, order, OrderStatus.REFUNDED, reason=f"refund {refund_id}")
            elif current not in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
                logger.warning("refund_on_open_order", order_id=str(order.id), status=order.status, refund_id=refund_id)

        logger.info(
            "refund_recorded",
            order_id=str(order.id),
            refund_id=refund_id,
            amount=str(delta),
            refund_status=order.refund_status,
        )
        return order

    async def open_dispute(self, session: AsyncSession, intent_id: str, reason: str | None = None) -> Order | None:
        """Freeze the order. Returns None when there is nothing to freeze."""
        order = await self.find_by_intent(session, intent_id)
        if order is None:
            return None
        current = OrderStatus(order.status)
        if current == OrderStatus.DISPUTED:
            logger.info("order_already_disputed", order_id=str(order.id))
            return None
        if not self.state_machine.can_transition(current, OrderStatus.DISPUTED):
            logger.warning("dispute_on_closed_order", order_id=str(order.id), status=order.status)
            return None
        return await self.state_machine.transition(session, order, OrderStatus.DISPUTED, reason=reason or "dispute opened")

    # ── Actor operations (own transaction) ──────────────────────────

    async def accept_order(self, order_id: uuid.UUID, actor_id: str) -> Order:
        """Seller accepts: capture the held funds, then payment_authorized -> accepted.

        Safe to repeat: the capture key is per order, and an already-accepted
        order is returned unchanged.
        """
        async with self._session_factory() as session:
            order = await self.state_machine.load(session, order_id, lock=False)
        self._require_party(order, actor_id, seller=True)
        if order.status == OrderStatus.ACCEPTED.value:
            return order
        if order.status != OrderStatus.PAYMENT_AUTHORIZED.value:
            raise InvalidStateTransitionError(order.status, OrderStatus.ACCEPTED)

        await self._capture(order)

        async with self._session_factory() as session:
            order = await self.state_machine.load(session, order_id)
            await self.state_machine.set_payment_status(session, order, PaymentStatus.CAPTURED)
            if order.status != OrderStatus.ACCEPTED.value:
                await self.state_machine.transition(session, order, OrderStatus.ACCEPTED, actor=actor_id, reason="seller accepted")
                await self._notify(
                    session,
                    order.buyer_id,
                    "order_accepted",
                    "Order accepted",
                    "The seller accepted your order.",
                    {"order_id": str(order.id)},
                )
            await session.commit()

        await emit_business_event("order_accepted")
        return order

    async def _capture(self, order: Order) -> None:
        try:
            await self._processor.capture_payment_intent(order.payment_intent_id, f"order-{order.id}-capture")
        except ExternalCallFailedError as exc:
            if exc.error_code == "payment_intent_unexpected_state":
                intent = await self._processor.retrieve_payment_intent(order.payment_intent_id)
                if intent.status == "succeeded":
                    logger.info("capture_already_succeeded", order_id=str(order.id))
                    return
            await self._alert(
                AlertType.STRIPE_ERROR,
                AlertSeverity.ERROR,
                "Payment capture failed",
                exc.message,
                {"order_id": str(order.id), "error_code": exc.error_code},
            )
            raise

    async def start_work(self, order_id: uuid.UUID, actor_id: str) -> Order:
        return await self._actor_transition(order_id, actor_id, OrderStatus.IN_PROGRESS, seller=True, reason="work started")

    async def deliver_order(self, order_id: uuid.UUID, actor_id: str) -> Order:
        order = await self._actor_transition(order_id, actor_id, OrderStatus.DELIVERED, seller=True, reason="delivered")
        await emit_business_event("order_delivered")
        return order

    async def request_revision(self, order_id: uuid.UUID, actor_id: str, reason: str | None = None) -> Order:
        return await self._actor_transition(
            order_id,
            actor_id,
            OrderStatus.REVISION_REQUESTED,
            seller=False,
            reason=reason or "revision requested",
        )

    async def _actor_transition(
        self,
        order_id: uuid.UUID,
        actor_id: str,
        target: OrderStatus,
        seller: bool,
        reason: str,
    ) -> Order:
        async with self._session_factory() as session:
            order = await self.state_machine.load(session, order_id)
            self._require_party(order, actor_id, seller=seller)
            await self.state_machine.transition(session, order, target, actor=actor_id, reason=reason)
            counterparty = order.buyer_id if seller else order.seller_id
            await self._notify(
                session,
                counterparty,
                f"order_{target.value}",
                f"Order {target.value.replace('_', ' ')}",
                reason,
                {"order_id": str(order.id)},
            )
            await session.commit()
        return order

    async def complete_order(self, order_id: uuid.UUID, actor_id: str | None = None, automatic: bool = False) -> Order:
        """Release escrow: delivered -> completed and queue commission distribution.

        ``automatic`` is the scheduled completion after the review window; otherwise
        only the buyer may complete.
        """
        async with self._session_factory() as session:
            order = await self.state_machine.load(session, order_id)
            if order.status == OrderStatus.COMPLETED.value:
                return order
            if not automatic:
                self._require_party(order, actor_id, seller=False)
            if order.status != OrderStatus.DELIVERED.value:
                raise InvalidStateTransitionError(order.status, OrderStatus.COMPLETED)

            await self.state_machine.transition(
                session,
                order,
                OrderStatus.COMPLETED,
                actor=actor_id if not automatic else "system",
                reason="auto-completed after review window" if automatic else "buyer confirmed delivery",
            )
            await self._queue.enqueue(
                JobType.DISTRIBUTE_COMMISSIONS,
                {"order_id": str(order.id)},
                priority=PRIORITY_DISTRIBUTE_COMMISSIONS,
                session=session,
            )
            await self._notify(
                session,
                order.seller_id,
                "order_completed",
                "Order completed",
                "The buyer confirmed delivery. Your earnings are on hold until release.",
                {"order_id": str(order.id)},
            )
            await session.commit()

        await emit_business_event("order_completed", Automatic=str(automatic).lower())
        return order

    async def cancel_order(self, order_id: uuid.UUID, actor_id: str, reason: str) -> Order:
        """Buyer or seller cancels before work starts; held funds are returned."""
        return await self._cancel(order_id, actor_id, reason, check_party=True)

    async def _cancel(self, order_id: uuid.UUID, actor_id: str, reason: str, check_party: bool) -> Order:
        async with self._session_factory() as session:
            order = await self.state_machine.load(session, order_id, lock=False)
        if check_party:
            self._require_party(order, actor_id)
        if OrderStatus(order.status) not in CANCELLABLE_STATUSES:
            raise InvalidStateTransitionError(order.status, OrderStatus.CANCELLED)

        funds = await self._return_funds(order)

        async with self._session_factory() as session:
            order = await self.state_machine.load(session, order_id)
            await self.state_machine.transition(
                session,
                order,
                OrderStatus.CANCELLED,
                actor=actor_id,
                reason=reason,
                cancellation_reason=reason,
            )
            if funds == "refunded":
                order.refund_status = "full"
                order.refund_amount = order.total_amount
                await session.flush()
                await self.state_machine.set_payment_status(session, order, PaymentStatus.REFUNDED)
            elif funds == "canceled":
                await self.state_machine.set_payment_status(session, order, PaymentStatus.CANCELED)
            for user_id in (order.buyer_id, order.seller_id):
                if user_id != actor_id:
                    await self._notify(
                        session,
                        user_id,
                        "order_cancelled",
                        "Order cancelled",
                        reason,
                        {"order_id": str(order.id)},
                    )
            await session.commit()

        await emit_business_event("order_cancelled")
        return order

    async def _return_funds(self, order: Order) -> str | None:
        """Refund a captured intent or cancel an uncaptured one.

        Returns "refunded", "canceled", or None when nothing was (or could be)
        done. Processor failures are alerted and do not block cancellation.
        """
        if not order.payment_intent_id:
            return None
        try:
            intent = await self._processor.retrieve_payment_intent(order.payment_intent_id)
            if intent.status == "succeeded":
                await self._processor.refund_payment_intent(order.payment_intent_id, f"order-{order.id}-refund")
                return "refunded"
            if intent.status in _CANCELABLE_INTENT_STATES:
                await self._processor.cancel_payment_intent(order.payment_intent_id, f"order-{order.id}-cancel")
                return "canceled"
            if intent.status == "canceled":
                return "canceled"
            return None
        except ExternalCallFailedError as exc:
            logger.error("order_funds_return_failed", order_id=str(order.id), error=exc.message, error_code=exc.error_code)
            await self._alert(
                AlertType.STRIPE_ERROR,
                AlertSeverity.CRITICAL,
                "Funds not returned on cancellation",
                exc.message,
                {"order_id": str(order.id), "payment_intent_id": order.payment_intent_id},
            )
            return None

    async def resolve_dispute(self, order_id: uuid.UUID, outcome: str, actor_id: str) -> Order:
        """Operator resolution of a disputed order."""
        target = DISPUTE_OUTCOMES.get(outcome)
        if target is None:
            raise BusinessRuleError(f"Unknown dispute outcome '{outcome}'")

        async with self._session_factory() as session:
            order = await self.state_machine.load(session, order_id)
            if order.status != OrderStatus.DISPUTED.value:
                raise InvalidStateTransitionError(order.status, target, "order is not disputed")

            if target == OrderStatus.COMPLETED:
                await self.state_machine.transition(session, order, target, actor=actor_id, reason="dispute resolved for seller")
                await self._queue.enqueue(
                    JobType.DISTRIBUTE_COMMISSIONS,
                    {"order_id": str(order.id)},
                    priority=PRIORITY_DISTRIBUTE_COMMISSIONS,
                    session=session,
                )
            else:
                if order.completed_at is not None:
                    remaining = Decimal(order.total_amount) - Decimal(order.refund_amount or 0)
                    if remaining > 0:
                        await self._queue.enqueue(
                            JobType.REVERSE_COMMISSIONS,
                            {"order_id": str(order.id), "refund_id": f"dispute-{order.id}", "amount": str(remaining)},
                            priority=PRIORITY_REVERSE_COMMISSIONS,
                            session=session,
                        )
                await self.state_machine.transition(
                    session,
                    order,
                    target,
                    actor=actor_id,
                    reason=f"dispute resolved: {outcome}",
                    refund_status="full" if target == OrderStatus.REFUNDED else order.refund_status,
                )
            await session.commit()

        logger.info("dispute_resolved", order_id=str(order_id), outcome=outcome, actor=actor_id)
        return order

    # ── Scheduled operations ────────────────────────────────────────

    async def recover_payments(self, limit: int = 50) -> dict:
        """Reconcile open orders whose payment events may have been lost."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.id, Order.payment_intent_id)
                .where(
                    Order.status.in_([OrderStatus.PENDING.value, OrderStatus.PAYMENT_AUTHORIZED.value]),
                    Order.payment_intent_id.is_not(None),
                )
                .order_by(Order.created_at.asc())
                .limit(limit)
            )
            candidates = result.all()

        summary = {"checked": 0, "updated": 0, "errors": 0}
        for order_id, intent_id in candidates:
            summary["checked"] += 1
            try:
                intent = await self._processor.retrieve_payment_intent(intent_id)
                async with self._session_factory() as session:
                    before = await self.state_machine.load(session, order_id, lock=False)
                    snapshot = (before.status, before.payment_status)
                    if intent.status == "requires_capture":
                        order = await self.record_authorization(session, intent_id)
                    elif intent.status == "succeeded":
                        order = await self.record_capture(session, intent_id)
                    elif intent.status == "canceled":
                        order = await self.record_intent_canceled(session, intent_id)
                    else:
                        order = None
                    await session.commit()
                if order is not None and (order.status, order.payment_status) != snapshot:
                    summary["updated"] += 1
                    logger.info("payment_recovered", order_id=str(order_id), intent_status=intent.status)
            except EscrowError as exc:
                summary["errors"] += 1
                logger.warning("payment_recovery_failed", order_id=str(order_id), error=exc.message)

        logger.info("payment_recovery_complete", **summary)
        return summary

    async def auto_complete_delivered(self, hours: int = 72) -> int:
        """Complete delivered orders the buyer has not reviewed within ``hours``."""
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.id).where(
                    Order.status == OrderStatus.DELIVERED.value,
                    Order.delivered_at < cutoff,
                )
            )
            order_ids = list(result.scalars().all())

        completed = 0
        for order_id in order_ids:
            try:
                await self.complete_order(order_id, automatic=True)
                completed += 1
            except EscrowError as exc:
                logger.warning("auto_complete_failed", order_id=str(order_id), error=exc.message)
        if completed:
            logger.info("orders_auto_completed", count=completed)
        return completed

    async def cancel_expired_authorizations(self) -> int:
        """Cancel authorized orders the seller did not accept before the deadline."""
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.id).where(
                    Order.status == OrderStatus.PAYMENT_AUTHORIZED.value,
                    Order.acceptance_deadline < now,
                )
            )
            order_ids = list(result.scalars().all())

        cancelled = 0
        for order_id in order_ids:
            try:
                await self._cancel(order_id, "system", "Seller did not accept before the deadline", check_party=False)
                cancelled += 1
            except EscrowError as exc:
                logger.warning("auto_cancel_failed", order_id=str(order_id), error=exc.message)
        if cancelled:
            logger.info("expired_authorizations_cancelled", count=cancelled)
        return cancelled

    async def cancel_orphan_orders(self, hours: int = 24, limit: int = 100) -> dict:
        """Cancel ``pending`` orders left unpaid for ``hours`` and release their open intents.

        An intent that was authorized or captured is not an abandoned checkout;
        such orders are left for ``recover_payments``.
        """
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.id, Order.payment_intent_id)
                .where(Order.status == OrderStatus.PENDING.value, Order.created_at < cutoff)
                .order_by(Order.created_at.asc())
                .limit(limit)
            )
            candidates = result.all()

        summary = {"checked": len(candidates), "cancelled": 0, "skipped": 0, "errors": 0}
        for order_id, intent_id in candidates:
            try:
                if intent_id:
                    intent = await self._processor.retrieve_payment_intent(intent_id)
                    if intent.status in ("requires_capture", "succeeded"):
                        logger.warning("orphan_order_has_payment", order_id=str(order_id), intent_status=intent.status)
                        summary["skipped"] += 1
                        continue
                await self._cancel(order_id, "system", f"Unpaid after {hours} hours", check_party=False)
                summary["cancelled"] += 1
            except EscrowError as exc:
                summary["errors"] += 1
                logger.warning("orphan_order_cancel_failed", order_id=str(order_id), error=exc.message)

        logger.info("orphan_orders_cleaned", **summary)
        return summary

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _require_party(order: Order, actor_id: str | None, seller: bool | None = None) -> None:
        """seller=True: seller only; seller=False: buyer only; None: either party."""
        if seller is True:
            allowed = actor_id == order.seller_id
        elif seller is False:
            allowed = actor_id == order.buyer_id
        else:
            allowed = actor_id in (order.buyer_id, order.seller_id)
        if not allowed:
            raise PermissionDeniedError("You are not allowed to perform this action on this order")

    async def _notify(
        self,
        session: AsyncSession,
        user_id: str,
        notification_type: str,
        title: str,
        body: str,
        data: dict,
    ) -> None:
        await self._queue.enqueue(
            JobType.SEND_NOTIFICATION,
            {
                "user_id": user_id,
                "notification_type": notification_type,
                "title": title,
                "body": body,
                "data": data,
            },
            priority=PRIORITY_NOTIFICATION,
            session=session,
        )

    async def _alert(self, alert_type: AlertType, severity: AlertSeverity, title: str, message: str, context: dict) -> None:
        if self._alerts is not None:
            await self._alerts.send(alert_type, severity, title, message, context)
