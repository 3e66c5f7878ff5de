"""
Pricing engine: order totals, bill totals and cent allocation.
"""

from decimal import Decimal

import pytest

from rms_pos.errors import ValidationError
from rms_pos.pricing import (
    allocate_cents,
    calculate_bill_totals,
    calculate_totals,
    from_cents,
    to_cents,
)


def test_order_totals_example():
    totals = calculate_totals([{"unit_price": Decimal("10.50"), "quantity": 2}], Decimal("0.18"))
    assert totals.subtotal == Decimal("21.00")
    assert totals.tax == Decimal("3.78")
    assert totals.total == Decimal("24.78")
    assert [line.total_cents for line in totals.lines] == [2100]


def test_sub_cent_price_rounds_to_one_cent():
    totals = calculate_totals([{"unit_price": 0.00999999977656, "quantity": 1}], 0)
    assert totals.subtotal_cents == 1
    assert totals.tax_cents == 0
    assert totals.total_cents == 1


def test_subtotal_is_rounded_once_not_per_line():
    # Three lines of 0.005 each: per-line rounding would give 0.03, the sum is 0.015 -> 0.02
    items = [{"unit_price": Decimal("0.005"), "quantity": 1} for _ in range(3)]
    totals = calculate_totals(items, 0)
    assert totals.subtotal_cents == 2
    assert sum(line.total_cents for line in totals.lines) == totals.subtotal_cents


def test_zero_price_items_give_zero_totals():
    totals = calculate_totals([{"unit_price": 0, "quantity": 3}], Decimal("0.18"))
    assert (totals.subtotal_cents, totals.tax_cents, totals.total_cents) == (0, 0, 0)


def test_accepts_objects_with_price_and_quantity():
    class Line:
        unit_price = Decimal("4.99")
        quantity = 3

    totals = calculate_totals([Line()], Decimal("0.05"))
    assert totals.subtotal == Decimal("14.97")
    assert totals.tax == Decimal("0.75")  # 0.7485 rounds half-up
    assert totals.total == Decimal("15.72")


@pytest.mark.parametrize(
    "item, rate",
    [
        ({"unit_price": -1, "quantity": 1}, 0),
        ({"unit_price": 1, "quantity": 0}, 0),
        ({"unit_price": 1, "quantity": -2}, 0),
        ({"unit_price": 1, "quantity": 1.5}, 0),
        ({"unit_price": "abc", "quantity": 1}, 0),
        ({"unit_price": 1, "quantity": 1}, -0.1),
    ],
)
def test_invalid_inputs_are_rejected(item, rate):
    with pytest.raises(ValidationError):
        calculate_totals([item], rate)


def test_money_helpers():
    assert to_cents(Decimal("2.345")) == 235
    assert to_cents("0.005") == 1
    assert from_cents(2478) == Decimal("24.78")


def test_allocate_cents_sums_exactly():
    shares = allocate_cents([1, 1, 1], 100)
    assert shares == [34, 33, 33]
    assert sum(allocate_cents([826, 826, 826], 378)) == 378
    assert allocate_cents([0, 0], 50) == [0, 0]


def test_bill_totals_with_service_charge_and_discount():
    # Discount and service charge are both taken off the pre-tax subtotal
    totals = calculate_bill_totals(
        2100,
        discounts=[{"name": "Happy hour", "type": "FIXED", "value": "1.00"}],
        taxes=[{"name": "GST", "rate": 18}],
        service_charge_percent=5,
    )
    assert totals.service_charge_cents == 105
    assert totals.discount_cents == 100
    assert totals.tax_cents == 379  # 18% of 21.05
    assert totals.total_cents == 2100 + 105 + 379 - 100
    assert totals.discounts[0]["amount_cents"] == 100
    assert totals.taxes[0] == {"name": "GST", "rate": "18", "amount_cents": 379}


def test_bill_percentage_discount():
    totals = calculate_bill_totals(
        2100,
        discounts=[{"type": "PERCENTAGE", "value": 10}],
        taxes=[{"name": "GST", "rate": 18}],
        service_charge_percent=10,
    )
    assert totals.discount_cents == 210
    assert totals.service_charge_cents == 210
    assert totals.tax_cents == 378
    assert totals.total_cents == 2478


def test_bill_with_several_tax_lines():
    totals = calculate_bill_totals(
        1000, taxes=[{"name": "CGST", "rate": "2.5"}, {"name": "SGST", "rate": "2.5"}]
    )
    assert [t["amount_cents"] for t in totals.taxes] == [25, 25]
    assert totals.total_cents == 1050


@pytest.mark.parametrize(
    "discounts, taxes, service",
    [
        ([{"type": "FIXED", "value": -1}], [], 0),
        ([{"type": "PERCENTAGE", "value": 120}], [], 0),
        ([{"type": "BOGUS", "value": 1}], [], 0),
        ([{"type": "FIXED", "value": 50}], [], 0),  # more than the bill
        ([], [{"name": "GST", "rate": -5}], 0),
        ([], [], -1),
    ],
)
def test_bill_totals_reject_invalid_adjustments(discounts, taxes, service):
    with pytest.raises(ValidationError):
        calculate_bill_totals(2100, discounts=discounts, taxes=taxes, service_charge_percent=service)
