"""Commission ledger: split calculation, double-entry distribution and refund reversal.

Every movement is a transaction group of ledger entries whose debits and
credits balance to the cent. A group that does not balance is never written:
the transaction is rolled back, a failed balance check is recorded and a
critical alert raised for an operator.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    BusinessRuleError,
    DependencyUnresolvedError,
    LedgerImbalanceError,
    NotFoundError,
)
from app.db.models.ledger import CommissionRun, LedgerBalanceCheck, LedgerEntry, RefundReversal
from app.db.models.order import Order
from app.db.models.revenue import Revenue
from app.metrics.cloudwatch import emit_business_event
from app.orders.state_machine import OrderStatus
from app.services.alerting import AlertSeverity, AlertSink, AlertType

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _money(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionSplit:
    total: Decimal
    platform_fee: Decimal
    agent_gross: Decimal
    platform_from_agent: Decimal
    agent_net: Decimal
    seller_net: Decimal
    platform_total: Decimal


def calculate_commission(
    total: Decimal,
    platform_fee_rate: Decimal = Decimal("5"),
    agent_rate: Decimal = ZERO,
    cut_rate: Decimal = ZERO,
) -> CommissionSplit:
    """Split an order total between seller, agent and platform.

    Rates are percentages. Each share is rounded half-up to the cent and the
    seller absorbs the rounding residual, so
    ``seller_net + agent_net + platform_total == total`` always holds.
    """
    total = _money(total)
    platform_fee = _money(total * Decimal(platform_fee_rate) / 100)
    agent_gross = _money(total * Decimal(agent_rate) / 100)
    platform_from_agent = _money(agent_gross * Decimal(cut_rate) / 100)
    agent_net = max(agent_gross - platform_from_agent, ZERO)
    seller_net = total - agent_gross - platform_fee
    if seller_net < 0:
        raise BusinessRuleError("Commission rates exceed the order total")
    return CommissionSplit(
        total=total,
        platform_fee=platform_fee,
        agent_gross=agent_gross,
        platform_from_agent=platform_from_agent,
        agent_net=agent_net,
        seller_net=seller_net,
        platform_total=platform_fee + platform_from_agent,
    )


class CommissionLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: AlertSink | None = None,
        platform_fee_rate: Decimal = Decimal("5"),
        revenue_hold_hours: int = 72,
    ):
        self._session_factory = session_factory
        self._alerts = alerts
        self._platform_fee_rate = Decimal(platform_fee_rate)
        self._hold = timedelta(hours=revenue_hold_hours)

    # ── Distribution ────────────────────────────────────────────────

    async def distribute(self, order_id: uuid.UUID) -> CommissionRun:
        """Post the commission split of a completed order. Idempotent per order."""
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            order = await session.get(Order, order_id, with_for_update=True)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            if order.status != OrderStatus.COMPLETED.value:
                raise BusinessRuleError(f"Order {order_id} is '{order.status}', commissions need 'completed'")

            existing = await self._run_for(session, order_id)
            if existing is not None:
                logger.info("commissions_already_distributed", order_id=str(order_id))
                return existing

            # No agent commission when the agent bought the order themselves
            has_agent = bool(order.agent_id) and order.agent_id != order.buyer_id
            split = calculate_commission(
                order.total_amount,
                self._platform_fee_rate,
                order.agent_commission_rate if has_agent else ZERO,
                order.agent_platform_cut_rate if has_agent else ZERO,
            )
            group_id = uuid.uuid4()

            run = CommissionRun(
                order_id=order_id,
                transaction_group_id=group_id,
                total_amount=split.total,
                seller_amount=split.seller_net,
                agent_amount=split.agent_net,
                platform_amount=split.platform_total,
                completed=True,
                completed_at=now,
            )
            session.add(run)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.info("commissions_already_distributed", order_id=str(order_id))
                async with self._session_factory() as fresh:
                    return await self._run_for(fresh, order_id)

            self._post(session, group_id, order_id, "escrow", None, "debit", split.total, "Escrow release")
            self._post(session, group_id, order_id, "seller_wallet", order.seller_id, "credit", split.seller_net, "Seller revenue")
            self._post(session, group_id, order_id, "platform_revenue", None, "credit", split.platform_total, "Platform commission")
            if has_agent:
                self._post(session, group_id, order_id, "agent_wallet", order.agent_id, "credit", split.agent_net, "Agent commission")

            available_at = now + self._hold
            shares = [
                ("seller", order.seller_id, split.seller_net),
                ("agent", order.agent_id if has_agent else None, split.agent_net),
                ("platform", None, split.platform_total),
            ]
            for revenue_type, user_id, amount in shares:
                if amount <= 0 or (revenue_type == "agent" and not has_agent):
                    continue
                session.add(
                    Revenue(
                        order_id=order_id,
                        user_id=user_id,
                        revenue_type=revenue_type,
                        amount=amount,
                        status="pending",
                        locked=False,
                        available_at=available_at,
                    )
                )

            order.platform_fee = split.platform_total
            order.seller_revenue = split.seller_net
            await session.flush()

            await self._ensure_balanced(session, group_id, {"order_id": str(order_id), "operation": "distribute"})
            await session.commit()

        logger.info(
            "commissions_distributed",
            order_id=str(order_id),
            transaction_group_id=str(group_id),
            seller=str(split.seller_net),
            agent=str(split.agent_net),
            platform=str(split.platform_total),
        )
        await emit_business_event("commissions_distributed")
        return run

    # ── Reversal ────────────────────────────────────────────────────

    async def reverse(self, order_id: uuid.UUID, refund_id: str, amount: Decimal) -> RefundReversal | None:
        """Reverse commissions for a refund. Idempotent per (order, refund).

        Returns None when the order's commissions were never distributed.
        Raises DependencyUnresolvedError while a completed order still awaits
        distribution.
        """
        amount = _money(amount)
        if amount <= 0:
            raise BusinessRuleError("Refund amount must be positive")

        async with self._session_factory() as session:
            order = await session.get(Order, order_id, with_for_update=True)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")

            run = await self._run_for(session, order_id)
            if run is None and order.status == OrderStatus.COMPLETED.value:
                # Distribution is still queued; retry once it has run
                raise DependencyUnresolvedError(refund_id, f"distribute_commissions:{order_id}")
            if run is None:
                logger.info("commission_reversal_skipped", order_id=str(order_id), refund_id=refund_id, reason="not distributed")
                return None

            existing = await self._reversal_for(session, order_id, refund_id)
            if existing is not None:
                logger.info("commission_reversal_already_applied", order_id=str(order_id), refund_id=refund_id)
                return existing

            reversed_totals = await self._reversed_totals(session, order_id)
            remaining = _money(run.total_amount) - reversed_totals["amount"]
            if amount > remaining:
                raise BusinessRuleError(f"Refund {amount} exceeds the remaining refundable amount {remaining}")

            if amount == remaining:
                agent_amount = _money(run.agent_amount) - reversed_totals["agent"]
                platform_amount = _money(run.platform_amount) - reversed_totals["platform"]
            else:
                ratio = amount / _money(run.total_amount)
                agent_amount = _money(_money(run.agent_amount) * ratio)
                platform_amount = _money(_money(run.platform_amount) * ratio)
            seller_amount = amount - agent_amount - platform_amount

            group_id = uuid.uuid4()
            reversal = RefundReversal(
                order_id=order_id,
                refund_id=refund_id,
                transaction_group_id=group_id,
                amount=amount,
                seller_amount=seller_amount,
                agent_amount=agent_amount,
                platform_amount=platform_amount,
            )
            session.add(reversal)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.info("commission_reversal_already_applied", order_id=str(order_id), refund_id=refund_id)
                async with self._session_factory() as fresh:
                    return await self._reversal_for(fresh, order_id, refund_id)

            description = f"Refund {refund_id}"
            self._post(session, group_id, order_id, "seller_wallet", order.seller_id, "debit", seller_amount, description)
            self._post(session, group_id, order_id, "agent_wallet", order.agent_id, "debit", agent_amount, description)
            self._post(session, group_id, order_id, "platform_revenue", None, "debit", platform_amount, description)
            self._post(session, group_id, order_id, "escrow", None, "credit", amount, description)
            await session.flush()

            shortfalls = {}
            for revenue_type, share in (("seller", seller_amount), ("agent", agent_amount), ("platform", platform_amount)):
                uncovered = await self._reduce_revenues(session, order_id, revenue_type, share)
                if uncovered > 0:
                    shortfalls[revenue_type] = str(uncovered)

            await self._ensure_balanced(session, group_id, {"order_id": str(order_id), "operation": "reverse"})
            await session.commit()

        logger.info(
            "commissions_reversed",
            order_id=str(order_id),
            refund_id=refund_id,
            amount=str(amount),
            full=amount == remaining,
        )
        if shortfalls and self._alerts is not None:
            await self._alerts.send(
                AlertType.COMMISSION_DRIFT,
                AlertSeverity.WARNING,
                "Refund exceeds open revenue",
                "Part of the reversed commission was already reserved or withdrawn and needs a manual clawback.",
                {"order_id": str(order_id), "refund_id": refund_id, **shortfalls},
            )
        await emit_business_event("commissions_reversed")
        return reversal

    async def _reduce_revenues(self, session: AsyncSession, order_id: uuid.UUID, revenue_type: str, amount: Decimal) -> Decimal:
        """Take ``amount`` out of the order's open, unreserved revenue rows. Returns what could not be covered."""
        remaining = amount
        if remaining <= 0:
            return ZERO
        result = await session.execute(
            select(Revenue)
            .where(
                Revenue.order_id == order_id,
                Revenue.revenue_type == revenue_type,
                Revenue.status.in_(["pending", "available"]),
                Revenue.locked.is_(False),
            )
            .order_by(Revenue.created_at.asc())
            .with_for_update()
        )
        for revenue in result.scalars().all():
            if remaining <= 0:
                break
            row_amount = _money(revenue.amount)
            if row_amount <= remaining:
                revenue.status = "reversed"
                remaining -= row_amount
            else:
                revenue.amount = row_amount - remaining
                remaining = ZERO
        await session.flush()
        return remaining

    # ── Verification ────────────────────────────────────────────────

    async def verify_balance(self, session: AsyncSession, transaction_group_id: uuid.UUID) -> LedgerBalanceCheck:
        """Sum a group's legs and record the result."""
        result = await session.execute(
            select(
                func.coalesce(func.sum(case((LedgerEntry.entry_type == "debit", LedgerEntry.amount), else_=0)), 0),
                func.coalesce(func.sum(case((LedgerEntry.entry_type == "credit", LedgerEntry.amount), else_=0)), 0),
            ).where(LedgerEntry.transaction_group_id == transaction_group_id)
        )
        debits, credits = result.one()
        debits, credits = _money(debits), _money(credits)
        check = LedgerBalanceCheck(
            transaction_group_id=transaction_group_id,
            total_debits=debits,
            total_credits=credits,
            balanced=abs(debits - credits) < CENT,
        )
        session.add(check)
        await session.flush()
        return check

    async def _ensure_balanced(self, session: AsyncSession, group_id: uuid.UUID, context: dict) -> None:
        check = await self.verify_balance(session, group_id)
        if check.balanced:
            return

        debits, credits = check.total_debits, check.total_credits
        await session.rollback()
        async with self._session_factory() as audit_session:
            audit_session.add(
                LedgerBalanceCheck(
                    transaction_group_id=group_id,
                    total_debits=debits,
                    total_credits=credits,
                    balanced=False,
                )
            )
            await audit_session.commit()
        if self._alerts is not None:
            await self._alerts.send(
                AlertType.LEDGER_IMBALANCE,
                AlertSeverity.CRITICAL,
                "Ledger imbalance detected",
                f"Transaction group {group_id} was rolled back: debits {debits} != credits {credits}",
                {"transaction_group_id": str(group_id), **context},
            )
        raise LedgerImbalanceError(group_id, debits, credits)

    async def audit_unbalanced(self, limit: int = 100) -> list[dict]:
        """Transaction groups whose stored legs do not balance."""
        debit_sum = func.sum(case((LedgerEntry.entry_type == "debit", LedgerEntry.amount), else_=0))
        credit_sum = func.sum(case((LedgerEntry.entry_type == "credit", LedgerEntry.amount), else_=0))
        async with self._session_factory() as session:
            result = await session.execute(
                select(LedgerEntry.transaction_group_id, debit_sum, credit_sum)
                .group_by(LedgerEntry.transaction_group_id)
                .having(func.abs(debit_sum - credit_sum) >= CENT)
                .limit(limit)
            )
            rows = result.all()
        return [
            {"transaction_group_id": str(group_id), "debits": str(_money(debits)), "credits": str(_money(credits))}
            for group_id, debits, credits in rows
        ]

    async def release_pending_revenues(self, now: datetime | None = None) -> int:
        """Make held revenue of still-completed orders available once the hold has passed."""
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Revenue)
                .where(
                    Revenue.status == "pending",
                    Revenue.available_at <= now,
                    Revenue.order_id.in_(select(Order.id).where(Order.status == OrderStatus.COMPLETED.value)),
                )
                .values(status="available", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info("revenues_released", count=result.rowcount)
        return result.rowcount

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _post(
        session: AsyncSession,
        group_id: uuid.UUID,
        order_id: uuid.UUID,
        account: str,
        user_id: str | None,
        entry_type: str,
        amount: Decimal,
        description: str,
    ) -> None:
        if amount <= 0:
            return
        session.add(
            LedgerEntry(
                transaction_group_id=group_id,
                order_id=order_id,
                account=account,
                user_id=user_id,
                entry_type=entry_type,
                amount=amount,
                description=description,
            )
        )

    @staticmethod
    async def _run_for(session: AsyncSession, order_id: uuid.UUID) -> CommissionRun | None:
        result = await session.execute(select(CommissionRun).where(CommissionRun.order_id == order_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _reversal_for(session: AsyncSession, order_id: uuid.UUID, refund_id: str) -> RefundReversal | None:
        result = await session.execute(
            select(RefundReversal).where(RefundReversal.order_id == order_id, RefundReversal.refund_id == refund_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _reversed_totals(session: AsyncSession, order_id: uuid.UUID) -> dict[str, Decimal]:
        result = await session.execute(
            select(
                func.coalesce(func.sum(RefundReversal.amount), 0),
                func.coalesce(func.sum(RefundReversal.agent_amount), 0),
                func.coalesce(func.sum(RefundReversal.platform_amount), 0),
            ).where(RefundReversal.order_id == order_id)
        )
        amount, agent, platform = result.one()
        return {"amount": _money(amount), "agent": _money(agent), "platform": _money(platform)}
