"""Tests for the order lifecycle routes."""

import uuid

import pytest

from app.payments.processor_fake import PaymentProcessorFake
from app.payments.stripe_processor import get_payment_processor
from app.queue.schemas import JobType
from app.services.alerting import AlertType
from tests.factories import BUYER, SELLER, alerts_of_type, create_authorized_order, jobs_of_type

pytestmark = pytest.mark.integration


def _as(user_id: str) -> dict:
    return {"X-Actor-Id": user_id}


@pytest.mark.asyncio
async def test_full_lifecycle_over_http(api_client, backbone, session_factory):
    order = await create_authorized_order(backbone)
    base = f"/orders/{order.id}"

    accepted = await api_client.post(f"{base}/accept", headers=_as(SELLER))
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert accepted.json()["payment_status"] == "captured"

    for step in ("start", "deliver"):
        assert (await api_client.post(f"{base}/{step}", headers=_as(SELLER))).status_code == 200
    revision = await api_client.post(f"{base}/request-revision", json={"reason": "wrong colour"}, headers=_as(BUYER))
    assert revision.json()["status"] == "revision_requested"
    for step in ("start", "deliver"):
        assert (await api_client.post(f"{base}/{step}", headers=_as(SELLER))).status_code == 200

    completed = await api_client.post(f"{base}/complete", headers=_as(BUYER))

    assert completed.json()["status"] == "completed"
    assert completed.json()["total_amount"] == "100.00"
    assert len(await jobs_of_type(session_factory, JobType.DISTRIBUTE_COMMISSIONS)) == 1


@pytest.mark.asyncio
async def test_actor_header_is_required(api_client, backbone):
    order = await create_authorized_order(backbone)

    response = await api_client.post(f"/orders/{order.id}/accept")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_buyer_cannot_accept(api_client, backbone):
    order = await create_authorized_order(backbone)

    response = await api_client.post(f"/orders/{order.id}/accept", headers=_as(BUYER))

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_unknown_order_is_404(api_client):
    response = await api_client.post(f"/orders/{uuid.uuid4()}/accept", headers=_as(SELLER))

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_out_of_order_transition_is_409(api_client, backbone):
    order = await create_authorized_order(backbone)

    response = await api_client.post(f"/orders/{order.id}/complete", headers=_as(BUYER))

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE_TRANSITION"


@pytest.mark.asyncio
async def test_cancel_requires_reason(api_client, backbone):
    order = await create_authorized_order(backbone)

    response = await api_client.post(f"/orders/{order.id}/cancel", json={"reason": ""}, headers=_as(BUYER))

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cancel_releases_authorization(api_client, backbone):
    order = await create_authorized_order(backbone)

    response = await api_client.post(
        f"/orders/{order.id}/cancel", json={"reason": "changed my mind"}, headers=_as(BUYER)
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancellation_reason"] == "changed my mind"


@pytest.mark.asyncio
async def test_processor_outage_on_accept_is_502_without_provider_text(app, api_client, backbone, session_factory):
    order = await create_authorized_order(backbone)
    app.dependency_overrides[get_payment_processor] = lambda: PaymentProcessorFake("processor_down")

    response = await api_client.post(f"/orders/{order.id}/accept", headers=_as(SELLER))

    assert response.status_code == 502
    body = response.json()
    assert body["code"] == "EXTERNAL_CALL_FAILED"
    assert body["detail"] == "The payment provider could not complete the request"
    assert (await backbone.orders.get_order(order.id)).status == "payment_authorized"
    assert len(await alerts_of_type(session_factory, AlertType.STRIPE_ERROR)) == 1
