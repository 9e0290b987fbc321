"""Tests for WithdrawalService: eligibility, FIFO reservation, lifecycle and operator repair."""

import uuid
from decimal import Decimal

import pytest

from app.core.exceptions import (
    BusinessRuleError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from app.db.models.revenue import Revenue
from app.db.models.withdrawal import Withdrawal, WithdrawalAllocation
from app.services.alerting import AlertType
from tests.factories import (
    SELLER,
    add_available_revenue,
    add_payout_profile,
    alerts_of_type,
    rows,
)

pytestmark = pytest.mark.integration


@pytest.fixture
async def funded_seller(session_factory):
    """Seller with an active payout profile and 10.00 + 20.00 available."""
    await add_payout_profile(session_factory)
    return await add_available_revenue(session_factory, SELLER, [Decimal("10.00"), Decimal("20.00")])


# =============================================================================
# ELIGIBILITY
# =============================================================================


@pytest.mark.asyncio
async def test_request_below_minimum_is_rejected(backbone, funded_seller):
    with pytest.raises(BusinessRuleError, match="Minimum"):
        await backbone.withdrawals.request_withdrawal(SELLER, Decimal("4.99"))


@pytest.mark.asyncio
async def test_request_without_profile_is_forbidden(backbone, session_factory):
    await add_available_revenue(session_factory, "nobody", [Decimal("50.00")])

    with pytest.raises(PermissionDeniedError):
        await backbone.withdrawals.request_withdrawal("nobody", Decimal("10.00"))


@pytest.mark.asyncio
async def test_request_from_buyer_role_is_forbidden(backbone, session_factory):
    await add_payout_profile(session_factory, user_id="buyer-x", role="buyer")

    with pytest.raises(PermissionDeniedError):
        await backbone.withdrawals.request_withdrawal("buyer-x", Decimal("10.00"))


@pytest.mark.asyncio
async def test_request_without_connected_account_is_rejected(backbone, session_factory):
    await add_payout_profile(session_factory, account_id=None)

    with pytest.raises(BusinessRuleError, match="payout account"):
        await backbone.withdrawals.request_withdrawal(SELLER, Decimal("10.00"))


@pytest.mark.asyncio
async def test_request_above_available_balance_is_rejected(backbone, funded_seller):
    with pytest.raises(InsufficientFundsError) as exc_info:
        await backbone.withdrawals.request_withdrawal(SELLER, Decimal("30.01"))

    assert exc_info.value.available == Decimal("30.00")
    assert await rows(backbone.session_factory, Withdrawal) == []


# =============================================================================
# RESERVATION
# =============================================================================


@pytest.mark.asyncio
async def test_reservation_takes_oldest_revenue_first_and_splits(backbone, session_factory, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("15.00"))

    assert withdrawal.status == "pending"
    balance = await backbone.withdrawals.balance(SELLER)
    assert balance["available"] == Decimal("15.00")
    assert balance["reserved"] == Decimal("15.00")

    allocations = await rows(session_factory, WithdrawalAllocation, WithdrawalAllocation.withdrawal_id == withdrawal.id)
    by_revenue = {a.revenue_id: a.amount for a in allocations}
    older, newer = funded_seller
    assert by_revenue == {older.id: Decimal("10.00"), newer.id: Decimal("5.00")}

    remainder = await rows(session_factory, Revenue, Revenue.locked.is_(False), Revenue.user_id == SELLER)
    assert [r.amount for r in remainder] == [Decimal("15.00")]


@pytest.mark.asyncio
async def test_reserved_revenue_cannot_be_requested_twice(backbone, funded_seller):
    await backbone.withdrawals.request_withdrawal(SELLER, Decimal("25.00"))

    with pytest.raises(InsufficientFundsError):
        await backbone.withdrawals.request_withdrawal(SELLER, Decimal("10.00"))


@pytest.mark.asyncio
async def test_pending_revenue_is_not_withdrawable(backbone, session_factory):
    await add_payout_profile(session_factory)
    await add_available_revenue(session_factory, SELLER, [Decimal("50.00")], status="pending")

    balance = await backbone.withdrawals.balance(SELLER)
    assert balance["pending"] == Decimal("50.00")
    assert balance["available"] == Decimal("0.00")
    with pytest.raises(InsufficientFundsError):
        await backbone.withdrawals.request_withdrawal(SELLER, Decimal("10.00"))


# =============================================================================
# LIFECYCLE
# =============================================================================


@pytest.mark.asyncio
async def test_failure_restores_the_balance_exactly(backbone, session_factory, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("15.00"))

    assert await backbone.withdrawals.confirm_failure(withdrawal.id, "bank rejected") is True
    assert await backbone.withdrawals.confirm_failure(withdrawal.id, "again") is False

    stored = await backbone.withdrawals.get(withdrawal.id)
    assert stored.status == "failed"
    assert stored.failure_reason == "bank rejected"
    balance = await backbone.withdrawals.balance(SELLER)
    assert balance["available"] == Decimal("30.00")
    assert balance["reserved"] == Decimal("0.00")

    allocations = await rows(session_factory, WithdrawalAllocation, WithdrawalAllocation.withdrawal_id == withdrawal.id)
    assert all(a.released_at is not None for a in allocations)


@pytest.mark.asyncio
async def test_success_requires_processing_and_marks_revenue_withdrawn(backbone, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("15.00"))

    # Not claimed yet
    assert await backbone.withdrawals.confirm_success(withdrawal.id) is False

    assert await backbone.withdrawals.claim_for_processing(withdrawal.id) is True
    assert await backbone.withdrawals.claim_for_processing(withdrawal.id) is False
    assert await backbone.withdrawals.confirm_success(withdrawal.id) is True
    assert await backbone.withdrawals.confirm_success(withdrawal.id) is False
    # A late failure cannot undo a completed withdrawal
    assert await backbone.withdrawals.confirm_failure(withdrawal.id, "late") is False

    stored = await backbone.withdrawals.get(withdrawal.id)
    assert stored.status == "completed"
    assert stored.completed_at is not None
    balance = await backbone.withdrawals.balance(SELLER)
    assert balance["withdrawn"] == Decimal("15.00")
    assert balance["available"] == Decimal("15.00")
    assert balance["reserved"] == Decimal("0.00")


@pytest.mark.asyncio
async def test_get_unknown_withdrawal(backbone):
    with pytest.raises(NotFoundError):
        await backbone.withdrawals.get(uuid.uuid4())


@pytest.mark.asyncio
async def test_find_by_payout_falls_back_to_metadata(backbone, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("10.00"))
    await backbone.withdrawals.record_payout(withdrawal.id, "po_123")

    async with backbone.session_factory() as session:
        assert (await backbone.withdrawals.find_by_payout(session, "po_123")).id == withdrawal.id
        fallback = await backbone.withdrawals.find_by_payout(session, "po_unknown", str(withdrawal.id))
        assert fallback.id == withdrawal.id
        assert await backbone.withdrawals.find_by_payout(session, "po_unknown", "not-a-uuid") is None


@pytest.mark.asyncio
async def test_manual_intervention_keeps_reservation(backbone, session_factory, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("10.00"))
    await backbone.withdrawals.claim_for_processing(withdrawal.id)

    await backbone.withdrawals.flag_manual_intervention(withdrawal.id, "payout failed after transfer tr_1")

    stored = await backbone.withdrawals.get(withdrawal.id)
    assert stored.status == "processing"
    assert stored.requires_manual_review is True
    assert (await backbone.withdrawals.balance(SELLER))["reserved"] == Decimal("10.00")
    alerts = await alerts_of_type(session_factory, AlertType.PAYOUT_FAILED)
    assert alerts[0].severity == "critical"


# =============================================================================
# OPERATOR REPAIR
# =============================================================================


@pytest.mark.asyncio
async def test_fix_retry_re_reserves_a_failed_withdrawal(backbone, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("15.00"))
    await backbone.withdrawals.confirm_failure(withdrawal.id, "bank rejected")

    fixed = await backbone.withdrawals.fix_withdrawal(withdrawal.id, "retry", "ops-1")

    assert fixed.status == "pending"
    assert fixed.failure_reason is None
    assert (await backbone.withdrawals.balance(SELLER))["reserved"] == Decimal("15.00")


@pytest.mark.asyncio
async def test_fix_retry_refused_after_transfer(backbone, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("15.00"))
    await backbone.withdrawals.record_transfer(withdrawal.id, "tr_done")
    await backbone.withdrawals.confirm_failure(withdrawal.id, "payout bounced")

    with pytest.raises(BusinessRuleError, match="already transferred"):
        await backbone.withdrawals.fix_withdrawal(withdrawal.id, "retry", "ops-1")


@pytest.mark.asyncio
async def test_fix_retry_requires_failed_status(backbone, funded_seller):
    withdrawal = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("15.00"))

    with pytest.raises(InvalidStateTransitionError):
        await backbone.withdrawals.fix_withdrawal(withdrawal.id, "retry", "ops-1")


@pytest.mark.asyncio
async def test_fix_complete_and_fail(backbone, funded_seller):
    first = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("10.00"))
    second = await backbone.withdrawals.request_withdrawal(SELLER, Decimal("10.00"))
    await backbone.withdrawals.claim_for_processing(first.id)
    await backbone.withdrawals.flag_manual_intervention(first.id, "payout failed")

    completed = await backbone.withdrawals.fix_withdrawal(first.id, "complete", "ops-1")
    failed = await backbone.withdrawals.fix_withdrawal(second.id, "fail", "ops-1")

    assert completed.status == "completed"
    assert completed.requires_manual_review is False
    assert failed.status == "failed"
    assert failed.failure_reason == "Failed by operator ops-1"

    with pytest.raises(InvalidStateTransitionError):
        await backbone.withdrawals.fix_withdrawal(first.id, "fail", "ops-1")


@pytest.mark.asyncio
async def test_fix_rejects_unknown_action_and_withdrawal(backbone):
    with pytest.raises(BusinessRuleError):
        await backbone.withdrawals.fix_withdrawal(uuid.uuid4(), "teleport", "ops-1")
    with pytest.raises(NotFoundError):
        await backbone.withdrawals.fix_withdrawal(uuid.uuid4(), "complete", "ops-1")

