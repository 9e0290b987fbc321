"""WithdrawalService: balance reservation and the withdrawal status lifecycle.

pending -> processing -> completed, with pending|processing -> failed. Each
status change is a conditional update on the expected current status, so
duplicate confirmations (webhook retries, operator double-clicks) are no-ops.

A withdrawal reserves concrete revenue rows (``withdrawal_allocations``):
success marks them withdrawn, failure releases them so the balance is
restored exactly.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    BusinessRuleError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from app.db.models.payout_profile import PAYOUT_ROLES, PayoutProfile
from app.db.models.revenue import Revenue
from app.db.models.withdrawal import Withdrawal, WithdrawalAllocation
from app.metrics.cloudwatch import emit_business_event
from app.services.alerting import AlertSeverity, AlertSink, AlertType

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

FIX_ACTIONS = frozenset({"retry", "complete", "fail"})


def _money(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT)


class WithdrawalService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: AlertSink | None = None,
        min_amount: Decimal = Decimal("5.00"),
        currency: str = "eur",
    ):
        self._session_factory = session_factory
        self._alerts = alerts
        self._min_amount = _money(min_amount)
        self._currency = currency

    # ── Requests & balance ──────────────────────────────────────────

    async def request_withdrawal(self, user_id: str, amount: Decimal) -> Withdrawal:
        """Reserve ``amount`` of the user's available revenue and create a pending withdrawal.

        Raises:
            BusinessRuleError: below the minimum, or no connected payout account
            PermissionDeniedError: no active payout profile with a payout role
            InsufficientFundsError: available balance below ``amount``
        """
        amount = _money(amount)
        if amount < self._min_amount:
            raise BusinessRuleError(f"Minimum withdrawal is {self._min_amount}")

        async with self._session_factory() as session:
            await self._require_payout_account(session, user_id)
            withdrawal = Withdrawal(
                id=uuid.uuid4(),
                user_id=user_id,
                amount=amount,
                currency=self._currency,
                status="pending",
            )
            session.add(withdrawal)
            await session.flush()
            await self._reserve(session, withdrawal)
            await session.commit()

        logger.info("withdrawal_requested", withdrawal_id=str(withdrawal.id), user_id=user_id, amount=str(amount))
        await emit_business_event("withdrawal_requested")
        return withdrawal

    async def _require_payout_account(self, session: AsyncSession, user_id: str) -> PayoutProfile:
        profile = await session.get(PayoutProfile, user_id)
        if profile is None or not profile.is_active or profile.role not in PAYOUT_ROLES:
            raise PermissionDeniedError("Withdrawals require an active seller, influencer or agent profile")
        if not profile.stripe_account_id:
            raise BusinessRuleError("Connect a payout account before withdrawing")
        return profile

    async def _reserve(self, session: AsyncSession, withdrawal: Withdrawal) -> None:
        """Lock available revenue rows FIFO by availability, splitting the last row if needed."""
        result = await session.execute(
            select(Revenue)
            .where(
                Revenue.user_id == withdrawal.user_id,
                Revenue.status == "available",
                Revenue.locked.is_(False),
            )
            .order_by(Revenue.available_at.asc(), Revenue.created_at.asc())
            .with_for_update()
        )
        rows = list(result.scalars().all())
        available = sum((_money(row.amount) for row in rows), Decimal("0.00"))
        amount = _money(withdrawal.amount)
        if available < amount:
            raise InsufficientFundsError(available, amount)

        remaining = amount
        for row in rows:
            if remaining <= 0:
                break
            row_amount = _money(row.amount)
            take = min(row_amount, remaining)
            if take < row_amount:
                session.add(
                    Revenue(
                        order_id=row.order_id,
                        user_id=row.user_id,
                        revenue_type=row.revenue_type,
                        amount=row_amount - take,
                        status=row.status,
                        locked=False,
                        available_at=row.available_at,
                    )
                )
                row.amount = take
            row.locked = True
            session.add(WithdrawalAllocation(withdrawal_id=withdrawal.id, revenue_id=row.id, amount=take))
            remaining -= take
        await session.flush()

    async def balance(self, user_id: str) -> dict[str, Decimal]:
        """available: withdrawable now; pending: on hold; reserved: held by open withdrawals; withdrawn: paid out."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Revenue.status, Revenue.locked, func.coalesce(func.sum(Revenue.amount), 0))
                .where(Revenue.user_id == user_id)
                .group_by(Revenue.status, Revenue.locked)
            )
            rows = result.all()

        totals = {key: Decimal("0.00") for key in ("available", "pending", "reserved", "withdrawn")}
        for status, locked, total in rows:
            if status == "available":
                totals["reserved" if locked else "available"] += _money(total)
            elif status in ("pending", "withdrawn"):
                totals[status] += _money(total)
        return totals

    # ── Lifecycle ───────────────────────────────────────────────────

    async def get(self, withdrawal_id: uuid.UUID) -> Withdrawal:
        async with self._session_factory() as session:
            withdrawal = await session.get(Withdrawal, withdrawal_id)
            if withdrawal is None:
                raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
            return withdrawal

    async def list_pending(self, limit: int = 50) -> list[Withdrawal]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Withdrawal)
                .where(Withdrawal.status == "pending")
                .order_by(Withdrawal.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_stale_processing(self, older_than: datetime, limit: int = 50) -> list[Withdrawal]:
        """Processing withdrawals claimed before ``older_than`` that no operator is handling yet."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Withdrawal)
                .where(
                    Withdrawal.status == "processing",
                    Withdrawal.requires_manual_review.is_(False),
                    Withdrawal.processing_started_at < older_than,
                )
                .order_by(Withdrawal.processing_started_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def payout_account(self, user_id: str) -> str | None:
        async with self._session_factory() as session:
            profile = await session.get(PayoutProfile, user_id)
            return profile.stripe_account_id if profile else None

    async def claim_for_processing(self, withdrawal_id: uuid.UUID) -> bool:
        """Atomic pending -> processing. False if another processor got there first."""
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Withdrawal)
                .where(Withdrawal.id == withdrawal_id, Withdrawal.status == "pending")
                .values(status="processing", processing_started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def record_transfer(self, withdrawal_id: uuid.UUID, transfer_id: str) -> None:
        await self._set(withdrawal_id, transfer_id=transfer_id)
        logger.info("withdrawal_transfer_created", withdrawal_id=str(withdrawal_id), transfer_id=transfer_id)

    async def record_payout(self, withdrawal_id: uuid.UUID, payout_id: str) -> None:
        await self._set(withdrawal_id, payout_id=payout_id)
        logger.info("withdrawal_payout_created", withdrawal_id=str(withdrawal_id), payout_id=payout_id)

    async def _set(self, withdrawal_id: uuid.UUID, **values) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Withdrawal)
                .where(Withdrawal.id == withdrawal_id)
                .values(updated_at=datetime.now(UTC), **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def confirm_success(self, withdrawal_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            applied = await self.complete(session, withdrawal_id)
            await session.commit()
        return applied

    async def confirm_failure(self, withdrawal_id: uuid.UUID, reason: str) -> bool:
        async with self._session_factory() as session:
            applied = await self.fail(session, withdrawal_id, reason)
            await session.commit()
        return applied

    async def complete(self, session: AsyncSession, withdrawal_id: uuid.UUID) -> bool:
        """processing -> completed in the caller's session; reserved revenue becomes withdrawn."""
        now = datetime.now(UTC)
        result = await session.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status == "processing")
            .values(status="completed", completed_at=now, requires_manual_review=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("withdrawal_success_ignored", withdrawal_id=str(withdrawal_id))
            return False

        await session.execute(
            update(Revenue)
            .where(Revenue.id.in_(self._open_allocations(withdrawal_id)))
            .values(status="withdrawn", locked=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("withdrawal_completed", withdrawal_id=str(withdrawal_id))
        await emit_business_event("withdrawal_processed", Outcome="completed")
        return True

    async def fail(self, session: AsyncSession, withdrawal_id: uuid.UUID, reason: str) -> bool:
        """pending|processing -> failed in the caller's session; reservations are released."""
        now = datetime.now(UTC)
        result = await session.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status.in_(["pending", "processing"]))
            .values(status="failed", failure_reason=reason, failed_at=now, requires_manual_review=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("withdrawal_failure_ignored", withdrawal_id=str(withdrawal_id))
            return False

        await session.execute(
            update(Revenue)
            .where(Revenue.id.in_(self._open_allocations(withdrawal_id)))
            .values(locked=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(WithdrawalAllocation)
            .where(WithdrawalAllocation.withdrawal_id == withdrawal_id, WithdrawalAllocation.released_at.is_(None))
            .values(released_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.warning("withdrawal_failed", withdrawal_id=str(withdrawal_id), reason=reason)
        await emit_business_event("withdrawal_processed", Outcome="failed")
        return True

    @staticmethod
    def _open_allocations(withdrawal_id: uuid.UUID):
        return select(WithdrawalAllocation.revenue_id).where(
            WithdrawalAllocation.withdrawal_id == withdrawal_id,
            WithdrawalAllocation.released_at.is_(None),
        )

    async def find_by_payout(
        self,
        session: AsyncSession,
        payout_id: str,
        withdrawal_id: str | None = None,
    ) -> Withdrawal | None:
        """Look up by payout id, falling back to the withdrawal id carried in payout metadata."""
        result = await session.execute(select(Withdrawal).where(Withdrawal.payout_id == payout_id))
        withdrawal = result.scalar_one_or_none()
        if withdrawal is None and withdrawal_id:
            try:
                withdrawal = await session.get(Withdrawal, uuid.UUID(withdrawal_id))
            except ValueError:
                withdrawal = None
        if withdrawal is None:
            logger.warning("withdrawal_not_found_for_payout", payout_id=payout_id)
        return withdrawal

    async def flag_manual_intervention(
        self,
        withdrawal_id: uuid.UUID,
        reason: str,
        alert_type: AlertType = AlertType.PAYOUT_FAILED,
        title: str = "Payout failed after transfer",
    ) -> None:
        """Money may have left the platform without reaching the bank: freeze for an operator.

        The withdrawal stays ``processing`` with its reservation intact; nothing
        retries it automatically.
        """
        await self._set(withdrawal_id, requires_manual_review=True, failure_reason=reason)
        logger.error("withdrawal_manual_intervention", withdrawal_id=str(withdrawal_id), reason=reason)
        if self._alerts is not None:
            await self._alerts.send(
                alert_type,
                AlertSeverity.CRITICAL,
                title,
                reason,
                {"withdrawal_id": str(withdrawal_id)},
            )

    async def fix_withdrawal(self, withdrawal_id: uuid.UUID, action: str, actor_id: str) -> Withdrawal:
        """Operator repair: ``retry`` a failed withdrawal, or force ``complete`` / ``fail``."""
        if action not in FIX_ACTIONS:
            raise BusinessRuleError(f"Unknown action '{action}'")

        async with self._session_factory() as session:
            withdrawal = await session.get(Withdrawal, withdrawal_id, with_for_update=True)
            if withdrawal is None:
                raise NotFoundError(f"Withdrawal {withdrawal_id} not found")

            if action == "retry":
                if withdrawal.status != "failed":
                    raise InvalidStateTransitionError(withdrawal.status, "pending", "only failed withdrawals can be retried")
                if withdrawal.transfer_id:
                    raise BusinessRuleError("Funds were already transferred; complete or fail this withdrawal instead")
                await self._require_payout_account(session, withdrawal.user_id)
                await self._reserve(session, withdrawal)
                withdrawal.status = "pending"
                withdrawal.failure_reason = None
                withdrawal.failed_at = None
                withdrawal.processing_started_at = None
                applied = True
            elif action == "complete":
                applied = await self.complete(session, withdrawal_id)
            else:
                applied = await self.fail(session, withdrawal_id, f"Failed by operator {actor_id}")

            if not applied:
                raise InvalidStateTransitionError(withdrawal.status, action)
            await session.commit()
            await session.refresh(withdrawal)

        logger.info("withdrawal_fixed", withdrawal_id=str(withdrawal_id), action=action, actor=actor_id)
        return withdrawal
