"""Withdrawal routes: user requests and balance, scheduler-invoked batch processing."""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import get_backbone
from app.core.auth import Actor, require_actor, require_worker_secret
from app.db.models.withdrawal import Withdrawal
from app.services.backbone import Backbone

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)


class WithdrawalResponse(BaseModel):
    id: str
    amount: str
    currency: str
    status: str
    transfer_id: str | None = None
    payout_id: str | None = None
    failure_reason: str | None = None
    requires_manual_review: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, withdrawal: Withdrawal) -> "WithdrawalResponse":
        return cls(
            id=str(withdrawal.id),
            amount=str(withdrawal.amount),
            currency=withdrawal.currency,
            status=withdrawal.status,
            transfer_id=withdrawal.transfer_id,
            payout_id=withdrawal.payout_id,
            failure_reason=withdrawal.failure_reason,
            requires_manual_review=bool(withdrawal.requires_manual_review),
            created_at=withdrawal.created_at,
        )


class BalanceResponse(BaseModel):
    available: str
    pending: str
    reserved: str
    withdrawn: str


class ProcessWithdrawalsRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=500)


class WithdrawalOutcome(BaseModel):
    id: str
    success: bool
    transfer_id: str | None = None
    payout_id: str | None = None
    error: str | None = None


class ProcessWithdrawalsResponse(BaseModel):
    success: bool = True
    processed: int
    succeeded: int
    failed: int
    results: list[WithdrawalOutcome]


# ── Routes ──────────────────────────────────────────────────────────


@router.post("/withdrawals", status_code=201, response_model=WithdrawalResponse)
async def request_withdrawal(
    request: WithdrawalRequest,
    actor: Actor = Depends(require_actor),
    backbone: Backbone = Depends(get_backbone),
):
    withdrawal = await backbone.withdrawals.request_withdrawal(actor.user_id, request.amount)
    return WithdrawalResponse.from_model(withdrawal)


@router.get("/withdrawals/balance", response_model=BalanceResponse)
async def get_balance(
    actor: Actor = Depends(require_actor),
    backbone: Backbone = Depends(get_backbone),
):
    totals = await backbone.withdrawals.balance(actor.user_id)
    return BalanceResponse(**{key: str(value) for key, value in totals.items()})


@router.post(
    "/withdrawals/process",
    response_model=ProcessWithdrawalsResponse,
    dependencies=[Depends(require_worker_secret)],
)
async def process_withdrawals(
    request: ProcessWithdrawalsRequest | None = None,
    backbone: Backbone = Depends(get_backbone),
):
    """Execute pending withdrawals with bounded concurrency."""
    limit = request.limit if request else None
    outcomes = await backbone.withdrawal_processor.process_batch(limit)
    succeeded = sum(1 for outcome in outcomes if outcome["success"])
    return ProcessWithdrawalsResponse(
        processed=len(outcomes),
        succeeded=succeeded,
        failed=len(outcomes) - succeeded,
        results=[WithdrawalOutcome(**outcome) for outcome in outcomes],
    )
