"""
Payment processor: bill generation, payment capture and receipts.
"""

import pytest
from sqlalchemy.dialects import postgresql

from rms_pos.billing import (
    _flip_order_to_paid,
    _parent_bill_lock,
    generate_bill,
    generate_receipt,
    get_bill,
    get_payments,
    process_bill_payment,
    process_order_payment,
    validate_payments,
)
from rms_pos.db import atomic
from rms_pos.errors import ValidationError
from rms_pos.models import BillStatus, PaymentMethod, PaymentStatus
from rms_pos.orders import get_order, get_order_items, update_order_status
from rms_pos.receipt_pdf import render_receipt_pdf
from rms_pos.splitting import split_bill

from conftest import TENANT


# ============ BILL GENERATION ============

def test_bill_defaults_to_order_tax_rate(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)

    assert bill.status == BillStatus.PENDING
    assert bill.bill_number.startswith("BILL-00A1-")
    assert (bill.subtotal_cents, bill.tax_cents, bill.total_cents) == (2100, 378, 2478)
    assert bill.taxes == [{"name": "GST", "rate": "18.00", "amount_cents": 378}]


def test_bill_with_discount_and_service_charge(make_order, session):
    order = make_order()
    bill = generate_bill(
        session, TENANT, order.id,
        discounts=[{"name": "Loyalty", "type": "FIXED", "value": 1}],
        service_charge_percent=5,
        notes="table 4",
    )
    assert bill.service_charge_cents == 105
    assert bill.discount_cents == 100
    assert bill.tax_cents == 379
    assert bill.total_cents == 2484
    assert bill.notes == "table 4"


def test_bill_with_explicit_taxes(make_order, session):
    order = make_order()
    bill = generate_bill(
        session, TENANT, order.id,
        taxes=[{"name": "CGST", "rate": 9}, {"name": "SGST", "rate": 9}],
    )
    assert [t["amount_cents"] for t in bill.taxes] == [189, 189]
    assert bill.total_cents == 2478


def test_new_bill_supersedes_unpaid_one(make_order, session):
    order = make_order()
    first = generate_bill(session, TENANT, order.id)
    second = generate_bill(session, TENANT, order.id, service_charge_percent=10)

    assert get_bill(session, TENANT, first.id).status == BillStatus.CANCELLED
    assert second.status == BillStatus.PENDING
    assert second.bill_number != first.bill_number


def test_no_bill_for_paid_or_cancelled_orders(make_order, session):
    paid = make_order()
    process_order_payment(session, TENANT, paid.id, [{"method": "CASH", "amount": 24.78}])
    with pytest.raises(ValidationError, match="already been paid"):
        generate_bill(session, TENANT, paid.id)

    cancelled = make_order()
    update_order_status(session, TENANT, cancelled.id, "CANCELLED")
    with pytest.raises(ValidationError, match="cannot be billed"):
        generate_bill(session, TENANT, cancelled.id)


# ============ PAYMENT VALIDATION ============

def test_validate_payments_accepts_within_a_cent():
    tenders = validate_payments([{"method": "CASH", "amount": "24.77"}], 2478)
    assert tenders[0]["method"] == PaymentMethod.CASH
    assert tenders[0]["amount_cents"] == 2477


@pytest.mark.parametrize(
    "payments, message",
    [
        ([], "At least one payment"),
        ([{"method": "CHEQUE", "amount": 24.78}], "Invalid payment method"),
        ([{"method": "CASH", "amount": 0}], "Invalid payment amount"),
        ([{"method": "CARD", "amount": 24.78, "card_last4": "12a4"}], "exactly 4 digits"),
        ([{"method": "CARD", "amount": 24.78, "card_last4": "12345"}], "exactly 4 digits"),
        ([{"method": "CASH", "amount": 20}], r"Payment amount \(20\.00\) does not match total \(24\.78\)"),
    ],
)
def test_validate_payments_rejects(payments, message):
    with pytest.raises(ValidationError, match=message):
        validate_payments(payments, 2478)


# ============ ORDER PAYMENTS ============

def test_order_payment_marks_order_paid(make_order, session):
    order = make_order()
    result = process_order_payment(
        session, TENANT, order.id,
        [{"method": "CARD", "amount": 24.78, "card_last4": "4242", "approval_code": "A1"}],
    )

    assert result.invoice_number.startswith("INV-00A1-")
    assert result.amount_cents == 2478
    order = get_order(session, TENANT, order.id)
    assert order.payment_status == PaymentStatus.PAID
    assert order.payment_method == "CARD"
    assert order.invoice_number == result.invoice_number
    assert order.paid_at is not None

    payments = get_payments(session, order_id=order.id)
    assert [(p.method, p.amount_cents, p.card_last4) for p in payments] == [
        (PaymentMethod.CARD, 2478, "4242")
    ]


def test_order_payment_keeps_customer_info(make_order, session):
    order = make_order()
    result = process_order_payment(
        session, TENANT, order.id,
        [{"method": "CASH", "amount": 24.78}],
        customer_info={"name": "Ana", "phone": "555-0101"},
    )
    assert result.order.customer_info == {"name": "Ana", "phone": "555-0101"}


def test_mixed_tenders_are_labelled_split(make_order, session):
    order = make_order()
    result = process_order_payment(
        session, TENANT, order.id,
        [{"method": "CASH", "amount": 10}, {"method": "UPI", "amount": "14.78", "reference": "upi-77"}],
    )
    assert result.order.payment_method == "SPLIT"
    assert len(result.payments) == 2


def test_order_cannot_be_paid_twice(make_order, session):
    order = make_order()
    process_order_payment(session, TENANT, order.id, [{"method": "CASH", "amount": 24.78}])
    with pytest.raises(ValidationError, match="already been paid"):
        process_order_payment(session, TENANT, order.id, [{"method": "CASH", "amount": 24.78}])
    assert len(get_payments(session, order_id=order.id)) == 1


def test_conditional_flip_refuses_a_paid_order(make_order, session):
    order = make_order()
    process_order_payment(session, TENANT, order.id, [{"method": "CASH", "amount": 24.78}])

    # A request that read the order before the first payment committed
    with pytest.raises(ValidationError, match="already been paid"):
        with atomic(session):
            _flip_order_to_paid(session, order, "INV-X", "CASH", order.paid_at)
    assert get_order(session, TENANT, order.id).invoice_number != "INV-X"


def test_rejected_payment_leaves_order_unpaid(make_order, session):
    order = make_order()
    with pytest.raises(ValidationError):
        process_order_payment(session, TENANT, order.id, [{"method": "CASH", "amount": 20}])
    assert get_order(session, TENANT, order.id).payment_status == PaymentStatus.PENDING
    assert get_payments(session, order_id=order.id) == []


def test_paying_the_order_cancels_open_bills(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)
    process_order_payment(session, TENANT, order.id, [{"method": "CASH", "amount": 24.78}])
    assert get_bill(session, TENANT, bill.id).status == BillStatus.CANCELLED


# ============ BILL PAYMENTS ============

def test_bill_payment_settles_the_order(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id, service_charge_percent=5)

    result = process_bill_payment(
        session, TENANT, bill.id,
        [{"method": "CASH", "amount": bill.total_cents / 100}],
        customer_info={"name": "Ana"},
    )

    assert result.bill.status == BillStatus.PAID
    assert result.bill.customer_info == {"name": "Ana"}
    assert result.order.payment_status == PaymentStatus.PAID
    assert result.order.invoice_number == result.invoice_number
    with pytest.raises(ValidationError, match="already been paid"):
        process_bill_payment(session, TENANT, bill.id, [{"method": "CASH", "amount": bill.total_cents / 100}])


def test_split_bills_settle_parent_with_the_last_payment(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)
    parent, children = split_bill(session, TENANT, bill.id, "EQUAL", number_of_people=2)

    with pytest.raises(ValidationError, match="pay its split bills"):
        process_bill_payment(session, TENANT, parent.id, [{"method": "CASH", "amount": 24.78}])

    first = process_bill_payment(session, TENANT, children[0].id, [{"method": "CASH", "amount": 12.39}])
    assert first.parent_bill is None
    assert first.order.payment_status == PaymentStatus.PENDING
    assert get_bill(session, TENANT, parent.id).status == BillStatus.SPLIT

    last = process_bill_payment(session, TENANT, children[1].id, [{"method": "CARD", "amount": 12.39}])
    assert last.parent_bill.status == BillStatus.PAID
    assert last.order.payment_status == PaymentStatus.PAID
    assert last.order.payment_method == "SPLIT"
    assert last.order.invoice_number == last.parent_bill.invoice_number
    assert last.parent_bill.invoice_number not in (first.invoice_number, last.invoice_number)


def test_split_payments_lock_the_parent_bill():
    sql = str(_parent_bill_lock(7).compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in sql


def test_split_bill_of_a_cancelled_parent_cannot_be_paid(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)
    _, children = split_bill(session, TENANT, bill.id, "EQUAL", number_of_people=2)

    # A child read while its parent was still SPLIT
    parent = get_bill(session, TENANT, bill.id)
    parent.status = BillStatus.CANCELLED
    session.add(parent)
    session.commit()

    with pytest.raises(ValidationError, match="can no longer be paid"):
        process_bill_payment(session, TENANT, children[0].id, [{"method": "CASH", "amount": 12.39}])
    assert get_bill(session, TENANT, children[0].id).status == BillStatus.PENDING


def test_order_partly_paid_through_bills_cannot_be_paid_directly(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)
    _, children = split_bill(session, TENANT, bill.id, "EQUAL", number_of_people=2)
    process_bill_payment(session, TENANT, children[0].id, [{"method": "CASH", "amount": 12.39}])

    with pytest.raises(ValidationError, match="partly paid"):
        process_order_payment(session, TENANT, order.id, [{"method": "CASH", "amount": 24.78}])
    with pytest.raises(ValidationError, match="already been paid"):
        generate_bill(session, TENANT, order.id)


def test_superseded_bill_cannot_be_paid(make_order, session):
    order = make_order()
    old = generate_bill(session, TENANT, order.id)
    generate_bill(session, TENANT, order.id)
    with pytest.raises(ValidationError, match="cancelled"):
        process_bill_payment(session, TENANT, old.id, [{"method": "CASH", "amount": 24.78}])


# ============ RECEIPTS ============

def test_receipt_requires_a_paid_bill(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)
    with pytest.raises(ValidationError, match="has not been paid"):
        generate_receipt(session, TENANT, bill.id)


def test_receipt_content(make_order, session, two_items):
    order = make_order(items=two_items)
    bill = generate_bill(
        session, TENANT, order.id, discounts=[{"name": "Staff", "type": "PERCENTAGE", "value": 10}]
    )
    process_bill_payment(
        session, TENANT, bill.id,
        [{"method": "CARD", "amount": bill.total_cents / 100, "card_last4": "1111"}],
    )

    receipt = generate_receipt(session, TENANT, bill.id)
    assert receipt["receipt_number"].startswith("INV-")
    assert receipt["bill_number"] == bill.bill_number
    assert receipt["order_number"] == order.order_number
    assert [i["name"] for i in receipt["items"]] == ["Chicken Curry", "Garlic Naan"]
    assert receipt["subtotal"] == 26.0
    assert receipt["discounts"] == [{"name": "Staff", "type": "PERCENTAGE", "amount": 2.6}]
    # 18% of 23.40
    assert receipt["taxes"][0]["amount"] == 4.21
    assert receipt["total"] == 27.61
    assert receipt["payments"] == [
        {"method": "CARD", "amount": 27.61, "reference": None, "card_last4": "1111"}
    ]
    assert receipt["issued_at"] is not None


def test_receipt_of_split_bill_lists_every_tender(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)
    _, children = split_bill(session, TENANT, bill.id, "EQUAL", number_of_people=2)
    process_bill_payment(session, TENANT, children[0].id, [{"method": "CASH", "amount": 12.39}])
    process_bill_payment(session, TENANT, children[1].id, [{"method": "UPI", "amount": 12.39}])

    receipt = generate_receipt(session, TENANT, bill.id)
    assert [p["method"] for p in receipt["payments"]] == ["CASH", "UPI"]
    assert receipt["total"] == 24.78


def test_receipt_pdf_renders(make_order, session):
    order = make_order()
    bill = generate_bill(session, TENANT, order.id)
    process_bill_payment(session, TENANT, bill.id, [{"method": "CASH", "amount": 24.78}])

    pdf = render_receipt_pdf(generate_receipt(session, TENANT, bill.id), "Casa Test", "1 Main St")
    assert pdf.getvalue().startswith(b"%PDF")


def test_shared_items_on_a_split_receipt_show_this_bills_share(make_order, session, two_items):
    order = make_order(items=two_items)  # 26.00 + 4.68 tax
    bill = generate_bill(session, TENANT, order.id)
    _, children = split_bill(session, TENANT, bill.id, "EQUAL", number_of_people=2)
    process_bill_payment(session, TENANT, children[0].id, [{"method": "CASH", "amount": 15.34}])

    receipt = generate_receipt(session, TENANT, children[0].id)
    assert receipt["subtotal"] == 13.0
    assert [(i["name"], i["total_price"], i["shared"]) for i in receipt["items"]] == [
        ("Chicken Curry", 10.5, True),
        ("Garlic Naan", 2.5, True),
    ]
    assert render_receipt_pdf(receipt, "Casa Test").getvalue().startswith(b"%PDF")


def test_item_split_receipt_lists_items_at_full_price(make_order, session, two_items):
    order = make_order(items=two_items)
    bill = generate_bill(session, TENANT, order.id)
    curry, naan = get_order_items(session, order.id)
    _, children = split_bill(session, TENANT, bill.id, "BY_ITEMS", item_splits=[[curry.id], [naan.id]])
    process_bill_payment(
        session, TENANT, children[1].id, [{"method": "CASH", "amount": children[1].total_cents / 100}]
    )

    receipt = generate_receipt(session, TENANT, children[1].id)
    assert [(i["name"], i["total_price"], i["shared"]) for i in receipt["items"]] == [
        ("Garlic Naan", 5.0, False),
    ]
