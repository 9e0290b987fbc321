"""Tests for the withdrawal routes."""

from decimal import Decimal

import pytest

from tests.factories import SELLER, add_available_revenue, add_payout_profile

pytestmark = pytest.mark.integration

SELLER_HEADERS = {"X-Actor-Id": SELLER}


@pytest.fixture
async def funded(session_factory):
    await add_payout_profile(session_factory)
    await add_available_revenue(session_factory, SELLER, [Decimal("60.00")])


@pytest.mark.asyncio
async def test_request_then_balance(api_client, funded):
    created = await api_client.post("/withdrawals", json={"amount": "25.00"}, headers=SELLER_HEADERS)

    assert created.status_code == 201
    body = created.json()
    assert body["amount"] == "25.00"
    assert body["status"] == "pending"
    assert body["currency"] == "eur"

    balance = await api_client.get("/withdrawals/balance", headers=SELLER_HEADERS)

    assert balance.json() == {"available": "35.00", "pending": "0.00", "reserved": "25.00", "withdrawn": "0.00"}


@pytest.mark.asyncio
async def test_insufficient_funds_is_422(api_client, funded):
    response = await api_client.post("/withdrawals", json={"amount": "60.01"}, headers=SELLER_HEADERS)

    assert response.status_code == 422
    assert response.json()["code"] == "INSUFFICIENT_FUNDS"


@pytest.mark.asyncio
async def test_non_positive_amount_is_rejected(api_client, funded):
    response = await api_client.post("/withdrawals", json={"amount": "0"}, headers=SELLER_HEADERS)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_user_without_payout_profile_is_403(api_client, session_factory):
    await add_available_revenue(session_factory, "stranger", [Decimal("60.00")])

    response = await api_client.post("/withdrawals", json={"amount": "10.00"}, headers={"X-Actor-Id": "stranger"})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_process_requires_worker_secret(api_client):
    response = await api_client.post("/withdrawals/process")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_process_executes_pending_withdrawals(api_client, worker_headers, funded, processor_fake):
    await api_client.post("/withdrawals", json={"amount": "20.00"}, headers=SELLER_HEADERS)

    response = await api_client.post("/withdrawals/process", json={"limit": 10}, headers=worker_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["succeeded"] == 1
    assert body["results"][0]["payout_id"].startswith("po_fake_")
    assert len(processor_fake.transfers) == 1
