"""
Bill Splitter

Partitions an order or a bill into payable fragments:
- EQUAL: n equal shares, the last share absorbs the rounding remainder
- BY_AMOUNT: caller-chosen amounts that must add up to the total (within 0.01)
- BY_ITEMS: groups of items, each carrying its proportional share of tax
  (and, for bills, of every tax line, discount and service charge)

Order splits are previews; bill splits are persisted as child bills.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from sqlmodel import Session

from .billing import get_bill, get_bill_items
from .db import atomic
from .errors import ValidationError
from .models import Bill, BillStatus, Order, OrderItem, PaymentStatus, SplitType
from .orders import get_order, get_order_items
from .pricing import allocate_cents, from_cents, to_cents, to_decimal

logger = logging.getLogger(__name__)

# Tolerance for caller-declared amounts, in cents
SPLIT_TOLERANCE_CENTS = 1


@dataclass
class SplitFragment:
    split_number: int
    amount_cents: int
    description: str | None = None
    item_ids: list[int] | None = None
    subtotal_cents: int | None = None
    tax_cents: int | None = None
    service_charge_cents: int | None = None
    taxes: list[dict] = field(default_factory=list)
    discounts: list[dict] = field(default_factory=list)


def parse_split_type(value: SplitType | str) -> SplitType:
    try:
        return SplitType(value)
    except ValueError:
        raise ValidationError(
            f"Invalid split type. Must be one of: {', '.join(t.value for t in SplitType)}"
        )


# ============ PURE SPLITS ============

def split_equal(total_cents: int, number_of_people: int) -> list[SplitFragment]:
    if isinstance(number_of_people, bool) or not isinstance(number_of_people, int) or number_of_people < 1:
        raise ValidationError("Number of people must be a whole number of at least 1")

    per_person = to_cents(from_cents(total_cents) / number_of_people)
    last = total_cents - per_person * (number_of_people - 1)
    if last < 0:
        raise ValidationError(
            f"Cannot split {from_cents(total_cents)} into {number_of_people} parts"
        )
    return [
        SplitFragment(
            split_number=index + 1,
            amount_cents=last if index == number_of_people - 1 else per_person,
            description="Equal split of all items",
        )
        for index in range(number_of_people)
    ]


def split_by_amount(
    total_cents: int,
    amounts: Sequence[object],
    descriptions: Sequence[str | None] | None = None,
) -> list[SplitFragment]:
    if not amounts:
        raise ValidationError("At least one split amount is required")

    fragments = []
    for index, amount in enumerate(amounts):
        amount_cents = to_cents(to_decimal(amount, "split amount"))
        if amount_cents <= 0:
            raise ValidationError(f"Invalid split amount at index {index}: {amount}")
        description = descriptions[index] if descriptions else None
        fragments.append(SplitFragment(
            split_number=index + 1,
            amount_cents=amount_cents,
            description=description or f"Split {index + 1}",
        ))

    split_total = sum(f.amount_cents for f in fragments)
    if abs(split_total - total_cents) > SPLIT_TOLERANCE_CENTS:
        raise ValidationError(
            f"Split amounts ({from_cents(split_total)}) do not equal total ({from_cents(total_cents)})"
        )
    return fragments


def _proportional_shares(group_subtotals: list[int], subtotal_cents: int, component_cents: int) -> list[int]:
    """round(component x group/subtotal) per group; the last group takes the remainder."""
    if not group_subtotals:
        return []
    shares = []
    for group_subtotal in group_subtotals[:-1]:
        if subtotal_cents:
            shares.append(to_cents(from_cents(component_cents) * group_subtotal / subtotal_cents))
        else:
            shares.append(0)
    last = component_cents - sum(shares)
    if (component_cents >= 0 and last < 0) or (component_cents < 0 and last > 0):
        # Half-up rounding overshot on many small groups; fall back to largest remainder
        return allocate_cents(group_subtotals, component_cents)
    shares.append(last)
    return shares


def split_by_items(
    items: Sequence[OrderItem],
    groups: Sequence[Sequence[int]],
    tax_cents: int = 0,
    taxes: Sequence[dict] = (),
    discounts: Sequence[dict] = (),
    service_charge_cents: int = 0,
) -> list[SplitFragment]:
    """
    Split items into groups. Every item must land in exactly one group.

    For an order pass `tax_cents`; for a bill pass its `taxes`, `discounts`
    and `service_charge_cents` (already-computed lines with amount_cents).
    """
    if not groups:
        raise ValidationError("At least one item group is required")

    by_id = {item.id: item for item in items}
    seen: dict[int, int] = {}
    for index, group in enumerate(groups):
        if not group:
            raise ValidationError(f"Item group {index + 1} is empty")
        for item_id in group:
            if item_id not in by_id:
                raise ValidationError(f"Unknown item in group {index + 1}: {item_id}")
            if item_id in seen:
                raise ValidationError(
                    f"Item {item_id} is assigned to more than one split "
                    f"(groups {seen[item_id] + 1} and {index + 1})"
                )
            seen[item_id] = index

    missing = [item.id for item in items if item.id not in seen]
    if missing:
        raise ValidationError(
            f"Items not assigned to any split: {', '.join(str(i) for i in missing)}",
            details={"unassigned_item_ids": missing},
        )

    subtotal_cents = sum(item.total_price_cents for item in items)
    group_subtotals = [sum(by_id[i].total_price_cents for i in group) for group in groups]

    tax_lines = list(taxes) if taxes else [{"name": "Tax", "amount_cents": tax_cents}]
    tax_shares = [
        _proportional_shares(group_subtotals, subtotal_cents, line["amount_cents"])
        for line in tax_lines
    ]
    discount_shares = [
        _proportional_shares(group_subtotals, subtotal_cents, line["amount_cents"])
        for line in discounts
    ]
    service_shares = _proportional_shares(group_subtotals, subtotal_cents, service_charge_cents)

    fragments = []
    for index, group in enumerate(groups):
        group_taxes = [
            {**line, "amount_cents": shares[index]} for line, shares in zip(tax_lines, tax_shares)
        ]
        group_discounts = [
            {**line, "amount_cents": shares[index]} for line, shares in zip(discounts, discount_shares)
        ]
        group_tax = sum(t["amount_cents"] for t in group_taxes)
        group_discount = sum(d["amount_cents"] for d in group_discounts)
        fragments.append(SplitFragment(
            split_number=index + 1,
            amount_cents=group_subtotals[index] + group_tax + service_shares[index] - group_discount,
            item_ids=list(group),
            subtotal_cents=group_subtotals[index],
            tax_cents=group_tax,
            service_charge_cents=service_shares[index],
            taxes=group_taxes if taxes else [],
            discounts=group_discounts,
        ))
    return fragments


def _check_fragments_total(fragments: list[SplitFragment], total_cents: int) -> None:
    split_total = sum(f.amount_cents for f in fragments)
    if abs(split_total - total_cents) > SPLIT_TOLERANCE_CENTS:
        raise ValidationError(
            f"Split amounts ({from_cents(split_total)}) do not equal total ({from_cents(total_cents)})"
        )


# ============ ORDER SPLITS ============

def split_order(
    session: Session,
    tenant_id: str,
    order_id: int,
    split_type: SplitType | str,
    number_of_people: int | None = None,
    amount_splits: Sequence[object] | None = None,
    item_splits: Sequence[Sequence[int]] | None = None,
) -> tuple[Order, list[SplitFragment]]:
    """Preview how an unpaid order divides among payers."""
    kind = parse_split_type(split_type)
    order = get_order(session, tenant_id, order_id)

    if order.payment_status == PaymentStatus.PAID:
        raise ValidationError("Cannot split a bill that has already been paid")
    if order.payment_status == PaymentStatus.CANCELLED:
        raise ValidationError(f"Cannot split order {order.order_number}: it is {order.status.value}")

    if kind == SplitType.EQUAL:
        if number_of_people is None:
            raise ValidationError("Number of people is required for an equal split")
        fragments = split_equal(order.total_cents, number_of_people)
    elif kind == SplitType.BY_AMOUNT:
        amounts = [_amount_of(split) for split in amount_splits or []]
        descriptions = [_description_of(split) for split in amount_splits or []]
        fragments = split_by_amount(order.total_cents, amounts, descriptions)
    else:
        items = get_order_items(session, order.id)
        fragments = split_by_items(items, item_splits or [], tax_cents=order.tax_cents)

    _check_fragments_total(fragments, order.total_cents)
    logger.info(f"Order {order.order_number} split {kind.value} into {len(fragments)} parts")
    return order, fragments


def _amount_of(split: object) -> object:
    if isinstance(split, dict):
        return split.get("amount")
    return getattr(split, "amount", split)


def _description_of(split: object) -> str | None:
    if isinstance(split, dict):
        return split.get("description")
    return getattr(split, "description", None)


# ============ BILL SPLITS ============

def split_bill(
    session: Session,
    tenant_id: str,
    bill_id: int,
    split_type: SplitType | str,
    number_of_people: int | None = None,
    amounts: Sequence[object] | None = None,
    item_splits: Sequence[Sequence[int]] | None = None,
) -> tuple[Bill, list[Bill]]:
    """Split an unpaid bill into child bills; the parent becomes SPLIT."""
    kind = parse_split_type(split_type)
    bill = get_bill(session, tenant_id, bill_id)

    if bill.status == BillStatus.PAID:
        raise ValidationError("Cannot split a bill that has already been paid")
    if bill.status == BillStatus.SPLIT:
        raise ValidationError(f"Bill {bill.bill_number} has already been split")
    if bill.status == BillStatus.CANCELLED:
        raise ValidationError(f"Bill {bill.bill_number} has been cancelled")
    if bill.parent_bill_id is not None:
        raise ValidationError(f"Bill {bill.bill_number} is itself a split and cannot be split again")

    order = get_order(session, tenant_id, bill.order_id)
    if order.payment_status == PaymentStatus.PAID:
        raise ValidationError("Cannot split a bill that has already been paid")

    if kind == SplitType.EQUAL:
        if number_of_people is None:
            raise ValidationError("Number of people is required for an equal split")
        fragments = split_equal(bill.total_cents, number_of_people)
        _allocate_charges(bill, fragments)
    elif kind == SplitType.BY_AMOUNT:
        fragments = split_by_amount(bill.total_cents, list(amounts or []))
        _allocate_charges(bill, fragments)
    else:
        fragments = split_by_items(
            get_bill_items(session, bill),
            item_splits or [],
            taxes=bill.taxes,
            discounts=bill.discounts,
            service_charge_cents=bill.service_charge_cents,
        )
    _check_fragments_total(fragments, bill.total_cents)

    with atomic(session, "split bill"):
        now = datetime.now(timezone.utc)
        children = []
        for fragment in fragments:
            child = Bill(
                tenant_id=bill.tenant_id,
                outlet_id=bill.outlet_id,
                order_id=bill.order_id,
                bill_number=f"{bill.bill_number}-S{fragment.split_number}",
                parent_bill_id=bill.id,
                split_number=fragment.split_number,
                split_type=kind,
                item_ids=fragment.item_ids if fragment.item_ids is not None else list(bill.item_ids),
                subtotal_cents=fragment.subtotal_cents,
                discounts=fragment.discounts,
                discount_cents=sum(d["amount_cents"] for d in fragment.discounts),
                service_charge_percent=bill.service_charge_percent,
                service_charge_cents=fragment.service_charge_cents,
                taxes=fragment.taxes,
                tax_cents=sum(t["amount_cents"] for t in fragment.taxes),
                total_cents=fragment.amount_cents,
                status=BillStatus.PENDING,
                notes=fragment.description,
            )
            session.add(child)
            children.append(child)
        bill.status = BillStatus.SPLIT
        bill.updated_at = now
        session.add(bill)

    session.refresh(bill)
    for child in children:
        session.refresh(child)
    logger.info(f"Bill {bill.bill_number} split {kind.value} into {len(children)} bills")
    return bill, children


def _allocate_charges(bill: Bill, fragments: list[SplitFragment]) -> None:
    """
    Share a bill's service charge, taxes and discounts across amount-based
    fragments in proportion to each fragment's amount. The fragment subtotal
    takes whatever is left so every child keeps
    total = subtotal + service charge + taxes - discounts.
    """
    weights = [f.amount_cents for f in fragments]
    service = allocate_cents(weights, bill.service_charge_cents)
    tax_shares = [allocate_cents(weights, line["amount_cents"]) for line in bill.taxes]
    discount_shares = [allocate_cents(weights, line["amount_cents"]) for line in bill.discounts]

    for index, fragment in enumerate(fragments):
        fragment.service_charge_cents = service[index]
        fragment.taxes = [
            {**line, "amount_cents": shares[index]} for line, shares in zip(bill.taxes, tax_shares)
        ]
        fragment.discounts = [
            {**line, "amount_cents": shares[index]} for line, shares in zip(bill.discounts, discount_shares)
        ]
        fragment.tax_cents = sum(t["amount_cents"] for t in fragment.taxes)
        discount = sum(d["amount_cents"] for d in fragment.discounts)
        fragment.subtotal_cents = (
            fragment.amount_cents - fragment.service_charge_cents - fragment.tax_cents + discount
        )
