"""Order state machine: the only writer of Order.status and Order.payment_status."""

import uuid
from datetime import UTC, datetime
from enum import Enum

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidStateTransitionError, NotFoundError
from app.db.models.order import Order, OrderStatusHistory

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PAYMENT_AUTHORIZED = "payment_authorized"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Processor-side payment state as last reconciled."""

    UNPAID = "unpaid"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELED = "canceled"


CAPTURED_PAYMENT_STATUSES = frozenset({PaymentStatus.CAPTURED.value, PaymentStatus.SUCCEEDED.value})
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAYMENT_AUTHORIZED, OrderStatus.ACCEPTED})
TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


class OrderStateMachine:
    """Validates and applies order transitions.

    Transitions are compare-and-swap updates on the current status inside the
    caller's transaction; an invalid or raced transition raises before
    anything is written. Every applied transition appends a history row.
    """

    TRANSITIONS = {
        OrderStatus.PENDING: [OrderStatus.PAYMENT_AUTHORIZED, OrderStatus.CANCELLED, OrderStatus.DISPUTED],
        OrderStatus.PAYMENT_AUTHORIZED: [OrderStatus.ACCEPTED, OrderStatus.CANCELLED, OrderStatus.DISPUTED],
        OrderStatus.ACCEPTED: [OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED, OrderStatus.DISPUTED],
        OrderStatus.IN_PROGRESS: [OrderStatus.DELIVERED, OrderStatus.DISPUTED],
        OrderStatus.DELIVERED: [OrderStatus.COMPLETED, OrderStatus.REVISION_REQUESTED, OrderStatus.DISPUTED],
        OrderStatus.REVISION_REQUESTED: [OrderStatus.IN_PROGRESS, OrderStatus.DISPUTED],
        OrderStatus.COMPLETED: [OrderStatus.REFUNDED, OrderStatus.DISPUTED],
        OrderStatus.DISPUTED: [OrderStatus.COMPLETED, OrderStatus.REFUNDED, OrderStatus.CANCELLED],  # operator resolution
        OrderStatus.CANCELLED: [],  # Terminal state
        OrderStatus.REFUNDED: [],  # Terminal state
    }

    # Forward-only: a late event can never move payment status backwards
    PAYMENT_TRANSITIONS = {
        PaymentStatus.UNPAID: [
            PaymentStatus.PENDING,
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELED,
        ],
        PaymentStatus.PENDING: [
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELED,
        ],
        PaymentStatus.AUTHORIZED: [PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELED],
        PaymentStatus.CAPTURED: [PaymentStatus.REFUNDED],
        PaymentStatus.SUCCEEDED: [PaymentStatus.REFUNDED],
        PaymentStatus.FAILED: [
            PaymentStatus.PENDING,
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURED,
            PaymentStatus.CANCELED,
        ],
        PaymentStatus.REFUNDED: [],
        PaymentStatus.CANCELED: [],
    }

    _TIMESTAMP_FIELDS = {
        OrderStatus.PAYMENT_AUTHORIZED: "payment_authorized_at",
        OrderStatus.ACCEPTED: "accepted_at",
        OrderStatus.IN_PROGRESS: "started_at",
        OrderStatus.DELIVERED: "delivered_at",
        OrderStatus.REVISION_REQUESTED: "revision_requested_at",
        OrderStatus.COMPLETED: "completed_at",
        OrderStatus.CANCELLED: "cancelled_at",
        OrderStatus.DISPUTED: "disputed_at",
        OrderStatus.REFUNDED: "refunded_at",
    }

    # Work must not start, and escrow must not be released, before capture
    _REQUIRES_CAPTURED_PAYMENT = frozenset({OrderStatus.ACCEPTED, OrderStatus.COMPLETED})

    @classmethod
    def can_transition(cls, current: OrderStatus, target: OrderStatus) -> bool:
        return target in cls.TRANSITIONS.get(current, [])

    def validate(self, order: Order, target: OrderStatus) -> OrderStatus:
        """Raise InvalidStateTransitionError unless ``order`` may move to ``target``. Returns the current status."""
        current = OrderStatus(order.status)
        if not self.can_transition(current, target):
            raise InvalidStateTransitionError(current, target)
        if target == OrderStatus.PAYMENT_AUTHORIZED and not order.payment_intent_id:
            raise InvalidStateTransitionError(current, target, "order has no payment intent")
        if target in self._REQUIRES_CAPTURED_PAYMENT and order.payment_status not in CAPTURED_PAYMENT_STATUSES:
            raise InvalidStateTransitionError(current, target, f"payment status is '{order.payment_status}'")
        return current

    async def load(self, session: AsyncSession, order_id: uuid.UUID, lock: bool = True) -> Order:
        order = await session.get(Order, order_id, with_for_update=lock, populate_existing=True)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def transition(
        self,
        session: AsyncSession,
        order: Order,
        target: OrderStatus,
        actor: str | None = None,
        reason: str | None = None,
        **fields,
    ) -> Order:
        """Apply ``order.status -> target`` with optional extra column writes.

        The caller owns the transaction; nothing is committed here.
        """
        current = self.validate(order, target)
        now = datetime.now(UTC)

        values = {"status": target.value, "updated_at": now, **fields}
        timestamp_field = self._TIMESTAMP_FIELDS.get(target)
        if timestamp_field:
            values[timestamp_field] = now

        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransitionError(current, target, "order changed concurrently")

        session.add(
            OrderStatusHistory(
                order_id=order.id,
                from_status=current.value,
                to_status=target.value,
                actor=actor or "system",
                reason=reason,
            )
        )
        await session.flush()
        await session.refresh(order)

        logger.info(
            "order_transitioned",
            order_id=str(order.id),
            from_status=current.value,
            to_status=target.value,
            actor=actor or "system",
        )
        return order

    async def set_payment_status(self, session: AsyncSession, order: Order, new_status: PaymentStatus) -> bool:
        """Move payment status forward. Returns False (no write) for repeats and backward moves."""
        current = PaymentStatus(order.payment_status)
        if current == new_status:
            return False
        if new_status not in self.PAYMENT_TRANSITIONS[current]:
            logger.info(
                "payment_status_change_ignored",
                order_id=str(order.id),
                current=current.value,
                requested=new_status.value,
            )
            return False

        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status == current.value)
            .values(payment_status=new_status.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await session.refresh(order)
        logger.info("payment_status_changed", order_id=str(order.id), from_status=current.value, to_status=new_status.value)
        return True
