"""Tests for calculate_commission: shares, rounding and the seller-absorbs-residual rule."""

from decimal import Decimal

import pytest

from app.core.exceptions import BusinessRuleError
from app.ledger.commissions import calculate_commission

pytestmark = pytest.mark.unit


def test_platform_fee_only():
    split = calculate_commission(Decimal("100.00"))

    assert split.platform_fee == Decimal("5.00")
    assert split.agent_gross == Decimal("0.00")
    assert split.agent_net == Decimal("0.00")
    assert split.seller_net == Decimal("95.00")
    assert split.platform_total == Decimal("5.00")


def test_agent_commission_with_platform_cut():
    split = calculate_commission(Decimal("100.00"), Decimal("5"), Decimal("10"), Decimal("20"))

    assert split.agent_gross == Decimal("10.00")
    assert split.platform_from_agent == Decimal("2.00")
    assert split.agent_net == Decimal("8.00")
    assert split.seller_net == Decimal("85.00")
    assert split.platform_total == Decimal("7.00")


def test_rounding_is_half_up_and_seller_absorbs_residual():
    split = calculate_commission(Decimal("33.33"), Decimal("5"), Decimal("10"), Decimal("15"))

    assert split.platform_fee == Decimal("1.67")  # 1.6665
    assert split.agent_gross == Decimal("3.33")  # 3.333
    assert split.platform_from_agent == Decimal("0.50")  # 0.4995
    assert split.agent_net == Decimal("2.83")
    assert split.seller_net == Decimal("28.33")
    assert split.seller_net + split.agent_net + split.platform_total == Decimal("33.33")


@pytest.mark.parametrize(
    "total,agent_rate,cut_rate",
    [
        (Decimal("0.01"), Decimal("10"), Decimal("50")),
        (Decimal("19.99"), Decimal("12.5"), Decimal("33.33")),
        (Decimal("1234.57"), Decimal("7"), Decimal("0")),
        (Decimal("99.99"), Decimal("0"), Decimal("100")),
    ],
)
def test_shares_always_sum_to_total(total, agent_rate, cut_rate):
    split = calculate_commission(total, Decimal("5"), agent_rate, cut_rate)

    assert split.seller_net + split.agent_net + split.platform_total == total
    assert split.seller_net >= 0
    assert split.agent_net >= 0


def test_rates_exceeding_the_total_are_rejected():
    with pytest.raises(BusinessRuleError):
        calculate_commission(Decimal("100.00"), Decimal("60"), Decimal("50"))
