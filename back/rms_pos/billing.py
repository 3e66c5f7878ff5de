"""
Payment Processor

Bills, payment capture and receipts.

A bill is generated from an order at checkout (discounts, service charge and
tax lines on top of the order subtotal). Payments settle either an order
directly or a bill; split bills are settled child by child and the parent
bill and its order flip to PAID with the last child.

The PENDING -> PAID flip is a conditional UPDATE gated on the current status,
so of two concurrent payment requests exactly one wins.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import update
from sqlmodel import Session, select

from . import events
from .db import atomic
from .errors import ResourceNotFoundError, ValidationError
from .identifiers import issue_bill_number, issue_invoice_number
from .models import (
    Bill,
    BillStatus,
    Order,
    OrderItem,
    Payment,
    PaymentMethod,
    PaymentStatus,
    SplitType,
    as_utc,
)
from .orders import CLOSED_ORDER_STATUSES, get_order, get_order_items
from .pricing import (
    HUNDRED,
    allocate_cents,
    calculate_bill_totals,
    cents_to_float,
    from_cents,
    to_cents,
    to_decimal,
)
from .settings import settings

logger = logging.getLogger(__name__)

PAYMENT_TOLERANCE_CENTS = 1
SPLIT_PAYMENT_METHOD = "SPLIT"

_CARD_LAST4 = re.compile(r"^\d{4}$")


@dataclass
class PaymentResult:
    order: Order
    invoice_number: str
    amount_cents: int
    paid_at: datetime
    payments: list[Payment] = field(default_factory=list)
    bill: Bill | None = None
    parent_bill: Bill | None = None  # Set when the last split bill settles its parent


# ============ LOOKUPS ============

def get_bill(session: Session, tenant_id: str, bill_id: int) -> Bill:
    bill = session.exec(
        select(Bill).where(Bill.id == bill_id, Bill.tenant_id == tenant_id)
    ).first()
    if not bill:
        raise ResourceNotFoundError("Bill", bill_id)
    return bill


def get_bill_items(session: Session, bill: Bill) -> list[OrderItem]:
    """Order items a bill covers, in order item order"""
    if not bill.item_ids:
        return []
    statement = (
        select(OrderItem)
        .where(OrderItem.order_id == bill.order_id)
        .where(OrderItem.id.in_(bill.item_ids))
        .order_by(OrderItem.id.asc())
    )
    return list(session.exec(statement).all())


def get_child_bills(session: Session, bill: Bill) -> list[Bill]:
    statement = (
        select(Bill)
        .where(Bill.tenant_id == bill.tenant_id, Bill.parent_bill_id == bill.id)
        .order_by(Bill.split_number.asc(), Bill.id.asc())
    )
    return list(session.exec(statement).all())


def get_payments(session: Session, order_id: int | None = None, bill_ids: Sequence[int] = ()) -> list[Payment]:
    statement = select(Payment)
    if bill_ids:
        statement = statement.where(Payment.bill_id.in_(list(bill_ids)))
    elif order_id is not None:
        statement = statement.where(Payment.order_id == order_id)
    else:
        return []
    return list(session.exec(statement.order_by(Payment.id.asc())).all())


def _ensure_order_payable(order: Order) -> None:
    if order.payment_status == PaymentStatus.PAID:
        raise ValidationError(f"Order {order.order_number} has already been paid")
    if order.payment_status == PaymentStatus.CANCELLED or order.status in CLOSED_ORDER_STATUSES:
        raise ValidationError(
            f"Order {order.order_number} is {order.status.value} and cannot be billed or paid"
        )


# ============ BILL GENERATION ============

def _default_taxes(order: Order) -> list[dict]:
    if order.tax_rate is None:
        raise ValidationError(
            f"Order {order.order_number} combines different tax rates; supply the bill taxes explicitly"
        )
    rate = (Decimal(order.tax_rate) * HUNDRED).quantize(Decimal("0.01"))
    return [{"name": settings.default_tax_name, "rate": rate}]


def _as_dict(value: object) -> dict:
    if isinstance(value, dict):
        return value
    return value.model_dump()


def generate_bill(
    session: Session,
    tenant_id: str,
    order_id: int,
    discounts: Iterable[object] = (),
    taxes: Iterable[object] | None = None,
    service_charge_percent: object = 0,
    notes: str | None = None,
) -> Bill:
    """
    Generate a bill for every item of an unpaid order.

    Taxes default to the order's own rate. An unpaid earlier bill is
    superseded (cancelled together with its unpaid split bills).
    """
    order = get_order(session, tenant_id, order_id)
    _ensure_order_payable(order)

    tax_lines = _default_taxes(order) if taxes is None else [_as_dict(t) for t in taxes]
    totals = calculate_bill_totals(
        order.subtotal_cents,
        discounts=[_as_dict(d) for d in discounts or []],
        taxes=tax_lines,
        service_charge_percent=service_charge_percent,
    )
    items = get_order_items(session, order.id)

    open_bills = session.exec(
        select(Bill).where(
            Bill.tenant_id == tenant_id,
            Bill.order_id == order.id,
            Bill.status.in_((BillStatus.PENDING, BillStatus.SPLIT, BillStatus.PAID)),
        )
    ).all()
    for existing in open_bills:
        if existing.status == BillStatus.PAID:
            raise ValidationError(
                f"Bill {existing.bill_number} for order {order.order_number} has already been paid; "
                f"a new bill cannot be generated"
            )

    with atomic(session, "generate bill"):
        now = datetime.now(timezone.utc)
        for existing in open_bills:
            existing.status = BillStatus.CANCELLED
            existing.updated_at = now
            session.add(existing)

        bill = Bill(
            tenant_id=tenant_id,
            outlet_id=order.outlet_id,
            order_id=order.id,
            bill_number=issue_bill_number(session, tenant_id, order.outlet_id),
            item_ids=[item.id for item in items],
            subtotal_cents=totals.subtotal_cents,
            discounts=totals.discounts,
            discount_cents=totals.discount_cents,
            service_charge_percent=to_decimal(service_charge_percent, "service charge"),
            service_charge_cents=totals.service_charge_cents,
            taxes=totals.taxes,
            tax_cents=totals.tax_cents,
            total_cents=totals.total_cents,
            status=BillStatus.PENDING,
            notes=notes,
        )
        session.add(bill)

    session.refresh(bill)
    superseded = [b.bill_number for b in open_bills]
    if superseded:
        logger.info(f"Bill {bill.bill_number} supersedes {', '.join(superseded)}")
    logger.info(
        f"Bill {bill.bill_number} generated for order {order.order_number} "
        f"(total {from_cents(bill.total_cents)})"
    )
    return bill


# ============ PAYMENTS ============

def _payment_value(payment: object, name: str) -> object:
    if isinstance(payment, dict):
        return payment.get(name)
    return getattr(payment, name, None)


def validate_payments(payments: Sequence[object], total_cents: int) -> list[dict]:
    """
    Check a list of tenders against the amount due.

    Returns normalized tenders: {"method", "amount_cents", "reference",
    "card_last4", "approval_code"}.
    """
    if not payments:
        raise ValidationError("At least one payment is required")

    tenders = []
    for index, payment in enumerate(payments):
        try:
            method = PaymentMethod(_payment_value(payment, "method"))
        except ValueError:
            raise ValidationError(
                f"Invalid payment method at index {index}: {_payment_value(payment, 'method')}. "
                f"Must be one of: {', '.join(m.value for m in PaymentMethod)}"
            )
        amount_cents = to_cents(to_decimal(_payment_value(payment, "amount"), "payment amount"))
        if amount_cents <= 0:
            raise ValidationError(f"Invalid payment amount at index {index}: {_payment_value(payment, 'amount')}")

        card_last4 = _payment_value(payment, "card_last4")
        if card_last4 is not None and not _CARD_LAST4.match(str(card_last4)):
            raise ValidationError(f"Card last 4 digits must be exactly 4 digits at index {index}")

        tenders.append({
            "method": method,
            "amount_cents": amount_cents,
            "reference": _payment_value(payment, "reference"),
            "card_last4": card_last4,
            "approval_code": _payment_value(payment, "approval_code"),
        })

    paid_cents = sum(t["amount_cents"] for t in tenders)
    if abs(paid_cents - total_cents) > PAYMENT_TOLERANCE_CENTS:
        raise ValidationError(
            f"Payment amount ({from_cents(paid_cents)}) does not match total ({from_cents(total_cents)})"
        )
    return tenders


def _payment_method_label(tenders: list[dict]) -> str:
    methods = {t["method"].value for t in tenders}
    return methods.pop() if len(methods) == 1 else SPLIT_PAYMENT_METHOD


def _flip_order_to_paid(
    session: Session,
    order: Order,
    invoice_number: str,
    payment_method: str,
    paid_at: datetime,
    customer_info: dict | None = None,
) -> None:
    values = {
        "payment_status": PaymentStatus.PAID,
        "invoice_number": invoice_number,
        "payment_method": payment_method,
        "paid_at": paid_at,
        "updated_at": paid_at,
    }
    if customer_info is not None:
        values["customer_info"] = customer_info
    result = session.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError(f"Order {order.order_number} has already been paid")


def _flip_bill_to_paid(
    session: Session,
    bill: Bill,
    from_status: BillStatus,
    invoice_number: str,
    paid_at: datetime,
    customer_info: dict | None = None,
) -> None:
    values = {
        "status": BillStatus.PAID,
        "invoice_number": invoice_number,
        "paid_at": paid_at,
        "updated_at": paid_at,
    }
    if customer_info is not None:
        values["customer_info"] = customer_info
    result = session.execute(
        update(Bill)
        .where(Bill.id == bill.id, Bill.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError(f"Bill {bill.bill_number} has already been paid")


def _record_payments(
    session: Session,
    order: Order,
    tenders: list[dict],
    invoice_number: str,
    paid_at: datetime,
    bill: Bill | None = None,
) -> list[Payment]:
    records = []
    for tender in tenders:
        record = Payment(
            tenant_id=order.tenant_id,
            order_id=order.id,
            bill_id=bill.id if bill else None,
            invoice_number=invoice_number,
            method=tender["method"],
            amount_cents=tender["amount_cents"],
            reference=tender["reference"],
            card_last4=tender["card_last4"],
            approval_code=tender["approval_code"],
            processed_at=paid_at,
        )
        session.add(record)
        records.append(record)
    return records


def _parent_bill_lock(parent_bill_id: int):
    # Sibling payments queue on the parent row, so the last one to commit
    # sees every other sibling as PAID
    return (
        select(Bill)
        .where(Bill.id == parent_bill_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def _publish_paid(order: Order, invoice_number: str, payment_method: str) -> None:
    events.publish_order_update(order.tenant_id, {
        "type": "order_paid",
        "order_id": order.id,
        "order_number": order.order_number,
        "invoice_number": invoice_number,
        "payment_method": payment_method,
    }, table_id=order.table_id)


def process_order_payment(
    session: Session,
    tenant_id: str,
    order_id: int,
    payments: Sequence[object],
    customer_info: dict | None = None,
) -> PaymentResult:
    """Settle an order directly. Unpaid bills for the order are cancelled."""
    order = get_order(session, tenant_id, order_id)
    _ensure_order_payable(order)

    bills = session.exec(
        select(Bill).where(Bill.tenant_id == tenant_id, Bill.order_id == order.id)
    ).all()
    paid_bill = next((b for b in bills if b.status == BillStatus.PAID), None)
    if paid_bill:
        raise ValidationError(
            f"Order {order.order_number} is partly paid through bill {paid_bill.bill_number}; "
            f"settle the remaining bills instead"
        )

    tenders = validate_payments(payments, order.total_cents)
    method = _payment_method_label(tenders)

    with atomic(session, "process payment"):
        paid_at = datetime.now(timezone.utc)
        invoice_number = issue_invoice_number(session, tenant_id, order.outlet_id)
        _flip_order_to_paid(session, order, invoice_number, method, paid_at, customer_info)
        records = _record_payments(session, order, tenders, invoice_number, paid_at)
        for bill in bills:
            if bill.status in (BillStatus.PENDING, BillStatus.SPLIT):
                bill.status = BillStatus.CANCELLED
                bill.updated_at = paid_at
                session.add(bill)

    session.refresh(order)
    for record in records:
        session.refresh(record)
    logger.info(
        f"Order {order.order_number} paid ({method}, {from_cents(order.total_cents)}), "
        f"invoice {invoice_number}"
    )
    _publish_paid(order, invoice_number, method)
    return PaymentResult(
        order=order,
        invoice_number=invoice_number,
        amount_cents=sum(t["amount_cents"] for t in tenders),
        paid_at=paid_at,
        payments=records,
    )


def process_bill_payment(
    session: Session,
    tenant_id: str,
    bill_id: int,
    payments: Sequence[object],
    customer_info: dict | None = None,
) -> PaymentResult:
    """
    Settle a bill.

    A root bill settles its order. A split bill settles only itself until the
    last sibling is paid; that payment also marks the parent bill and the
    order PAID.
    """
    bill = get_bill(session, tenant_id, bill_id)
    if bill.status == BillStatus.PAID:
        raise ValidationError(f"Bill {bill.bill_number} has already been paid")
    if bill.status == BillStatus.SPLIT:
        raise ValidationError(f"Bill {bill.bill_number} has been split; pay its split bills instead")
    if bill.status == BillStatus.CANCELLED:
        raise ValidationError(f"Bill {bill.bill_number} has been cancelled")

    order = get_order(session, tenant_id, bill.order_id)
    _ensure_order_payable(order)
    tenders = validate_payments(payments, bill.total_cents)
    method = _payment_method_label(tenders)

    parent = None
    with atomic(session, "process payment"):
        if bill.parent_bill_id is not None:
            parent = session.exec(_parent_bill_lock(bill.parent_bill_id)).one()
            if parent.status != BillStatus.SPLIT:
                raise ValidationError(
                    f"Bill {parent.bill_number} is {parent.status.value}; its split bills can no longer be paid"
                )
        paid_at = datetime.now(timezone.utc)
        invoice_number = issue_invoice_number(session, tenant_id, bill.outlet_id)
        _flip_bill_to_paid(session, bill, BillStatus.PENDING, invoice_number, paid_at, customer_info)
        records = _record_payments(session, order, tenders, invoice_number, paid_at, bill=bill)

        if bill.parent_bill_id is None:
            _flip_order_to_paid(session, order, invoice_number, method, paid_at, customer_info)
            order_paid = True
        else:
            unpaid = session.exec(
                select(Bill).where(
                    Bill.parent_bill_id == parent.id,
                    Bill.status != BillStatus.PAID,
                )
            ).all()
            order_paid = not unpaid
            if order_paid:
                parent_invoice = issue_invoice_number(session, tenant_id, parent.outlet_id)
                _flip_bill_to_paid(session, parent, BillStatus.SPLIT, parent_invoice, paid_at, customer_info)
                _flip_order_to_paid(session, order, parent_invoice, SPLIT_PAYMENT_METHOD, paid_at, customer_info)

    session.refresh(bill)
    session.refresh(order)
    if parent is not None:
        session.refresh(parent)
    for record in records:
        session.refresh(record)

    logger.info(
        f"Bill {bill.bill_number} paid ({method}, {from_cents(bill.total_cents)}), "
        f"invoice {invoice_number}"
    )
    if order_paid:
        _publish_paid(order, order.invoice_number, order.payment_method)
    return PaymentResult(
        order=order,
        invoice_number=invoice_number,
        amount_cents=sum(t["amount_cents"] for t in tenders),
        paid_at=paid_at,
        payments=records,
        bill=bill,
        parent_bill=parent if order_paid else None,
    )


# ============ RECEIPTS ============

def generate_receipt(session: Session, tenant_id: str, bill_id: int) -> dict:
    """Printable projection of a paid bill."""
    bill = get_bill(session, tenant_id, bill_id)
    if bill.status != BillStatus.PAID:
        raise ValidationError(f"Bill {bill.bill_number} has not been paid; receipt unavailable")
    order = get_order(session, tenant_id, bill.order_id)

    children = get_child_bills(session, bill)
    bill_ids = [child.id for child in children] if children else [bill.id]
    payments = get_payments(session, bill_ids=bill_ids)

    items = get_bill_items(session, bill)
    # EQUAL and BY_AMOUNT splits carry every item; each line shows this bill's share
    shared = bill.split_type in (SplitType.EQUAL, SplitType.BY_AMOUNT)
    if shared:
        line_cents = allocate_cents([item.total_price_cents for item in items], bill.subtotal_cents)
    else:
        line_cents = [item.total_price_cents for item in items]

    return {
        "receipt_number": bill.invoice_number,
        "bill_number": bill.bill_number,
        "order_number": order.order_number,
        "outlet_id": bill.outlet_id,
        "order_type": order.order_type.value,
        "items": [
            {
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": float(item.unit_price),
                "total_price": cents_to_float(cents),
                "shared": shared,
            }
            for item, cents in zip(items, line_cents)
        ],
        "subtotal": cents_to_float(bill.subtotal_cents),
        "discounts": [
            {"name": d["name"], "type": d["type"], "amount": cents_to_float(d["amount_cents"])}
            for d in bill.discounts
        ],
        "service_charge": cents_to_float(bill.service_charge_cents),
        "taxes": [
            {"name": t["name"], "rate": float(t["rate"]), "amount": cents_to_float(t["amount_cents"])}
            for t in bill.taxes
        ],
        "total": cents_to_float(bill.total_cents),
        "payments": [
            {
                "method": p.method.value,
                "amount": cents_to_float(p.amount_cents),
                "reference": p.reference,
                "card_last4": p.card_last4,
            }
            for p in payments
        ],
        "customer_info": bill.customer_info,
        "issued_at": as_utc(bill.paid_at).isoformat() if bill.paid_at else None,
        "printed_at": datetime.now(timezone.utc).isoformat(),
    }
