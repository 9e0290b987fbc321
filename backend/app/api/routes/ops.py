"""Operator endpoints: replays, repairs, audits and maintenance. Guarded by the worker secret."""

import uuid

import structlog
from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from app.api.deps import get_backbone
from app.api.routes.orders import OrderResponse
from app.api.routes.withdrawals import WithdrawalResponse
from app.core.auth import require_worker_secret
from app.queue.schemas import PRIORITY_DISTRIBUTE_COMMISSIONS, JobType, QueueStats
from app.services.backbone import Backbone

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_worker_secret)])


class FixWithdrawalRequest(BaseModel):
    action: str = Field(pattern="^(retry|complete|fail)$")


class ResolveDisputeRequest(BaseModel):
    outcome: str = Field(pattern="^(completed|refunded|cancelled)$")


class RecoverPaymentsRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class MaintenanceRequest(BaseModel):
    tasks: list[str] | None = None


def operator_id(x_operator_id: str | None = Header(default=None)) -> str:
    return (x_operator_id or "operator").strip() or "operator"


@router.post("/webhooks/{event_id}/replay")
async def replay_webhook(event_id: str, force: bool = False, backbone: Backbone = Depends(get_backbone)):
    job_id = await backbone.intake.replay(event_id, force=force)
    return {"event_id": event_id, "job_id": str(job_id)}


@router.post("/orders/{order_id}/commissions/reprocess")
async def reprocess_commissions(
    order_id: uuid.UUID,
    operator: str = Depends(operator_id),
    backbone: Backbone = Depends(get_backbone),
):
    """Queue commission distribution again; a no-op if it already ran."""
    order = await backbone.orders.get_order(order_id)
    job_id = await backbone.queue.enqueue(
        JobType.DISTRIBUTE_COMMISSIONS,
        {"order_id": str(order.id)},
        priority=PRIORITY_DISTRIBUTE_COMMISSIONS,
    )
    logger.info("commissions_reprocess_requested", order_id=str(order_id), operator=operator)
    return {"order_id": str(order_id), "job_id": str(job_id)}


@router.post("/orders/{order_id}/resolve-dispute", response_model=OrderResponse)
async def resolve_dispute(
    order_id: uuid.UUID,
    request: ResolveDisputeRequest,
    operator: str = Depends(operator_id),
    backbone: Backbone = Depends(get_backbone),
):
    return OrderResponse.from_model(await backbone.orders.resolve_dispute(order_id, request.outcome, operator))


@router.post("/withdrawals/{withdrawal_id}/fix", response_model=WithdrawalResponse)
async def fix_withdrawal(
    withdrawal_id: uuid.UUID,
    request: FixWithdrawalRequest,
    operator: str = Depends(operator_id),
    backbone: Backbone = Depends(get_backbone),
):
    withdrawal = await backbone.withdrawals.fix_withdrawal(withdrawal_id, request.action, operator)
    return WithdrawalResponse.from_model(withdrawal)


@router.get("/ledger/unbalanced")
async def unbalanced_ledger(limit: int = 100, backbone: Backbone = Depends(get_backbone)):
    groups = await backbone.ledger.audit_unbalanced(limit)
    return {"count": len(groups), "groups": groups}


@router.post("/payments/recover")
async def recover_payments(request: RecoverPaymentsRequest | None = None, backbone: Backbone = Depends(get_backbone)):
    limit = request.limit if request else 50
    return await backbone.orders.recover_payments(limit)


@router.post("/maintenance")
async def run_maintenance(request: MaintenanceRequest | None = None, backbone: Backbone = Depends(get_backbone)):
    tasks = request.tasks if request else None
    return {"results": await backbone.maintenance.run(tasks)}


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats(backbone: Backbone = Depends(get_backbone)):
    return await backbone.queue.stats()
