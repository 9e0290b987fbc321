"""Order lifecycle actions taken by the buyer or the seller."""

import uuid

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import get_backbone
from app.core.auth import Actor, require_actor
from app.db.models.order import Order
from app.services.backbone import Backbone

router = APIRouter()


class OrderResponse(BaseModel):
    id: str
    status: str
    payment_status: str
    total_amount: str
    refund_status: str | None = None
    cancellation_reason: str | None = None

    @classmethod
    def from_model(cls, order: Order) -> "OrderResponse":
        return cls(
            id=str(order.id),
            status=order.status,
            payment_status=order.payment_status,
            total_amount=str(order.total_amount),
            refund_status=order.refund_status,
            cancellation_reason=order.cancellation_reason,
        )


class ReasonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


@router.post("/{order_id}/accept", response_model=OrderResponse)
async def accept_order(order_id: uuid.UUID, actor: Actor = Depends(require_actor), backbone: Backbone = Depends(get_backbone)):
    """Seller accepts the order; the held payment is captured."""
    return OrderResponse.from_model(await backbone.orders.accept_order(order_id, actor.user_id))


@router.post("/{order_id}/start", response_model=OrderResponse)
async def start_work(order_id: uuid.UUID, actor: Actor = Depends(require_actor), backbone: Backbone = Depends(get_backbone)):
    return OrderResponse.from_model(await backbone.orders.start_work(order_id, actor.user_id))


@router.post("/{order_id}/deliver", response_model=OrderResponse)
async def deliver_order(order_id: uuid.UUID, actor: Actor = Depends(require_actor), backbone: Backbone = Depends(get_backbone)):
    return OrderResponse.from_model(await backbone.orders.deliver_order(order_id, actor.user_id))


@router.post("/{order_id}/request-revision", response_model=OrderResponse)
async def request_revision(
    order_id: uuid.UUID,
    request: ReasonRequest | None = None,
    actor: Actor = Depends(require_actor),
    backbone: Backbone = Depends(get_backbone),
):
    reason = request.reason if request else None
    return OrderResponse.from_model(await backbone.orders.request_revision(order_id, actor.user_id, reason))


@router.post("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(order_id: uuid.UUID, actor: Actor = Depends(require_actor), backbone: Backbone = Depends(get_backbone)):
    """Buyer confirms delivery; escrow is released and commissions are queued."""
    return OrderResponse.from_model(await backbone.orders.complete_order(order_id, actor.user_id))


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: uuid.UUID,
    request: CancelRequest,
    actor: Actor = Depends(require_actor),
    backbone: Backbone = Depends(get_backbone),
):
    return OrderResponse.from_model(await backbone.orders.cancel_order(order_id, actor.user_id, request.reason))
