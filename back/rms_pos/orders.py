"""
Order Ledger

Order creation and status lifecycle:
- totals through the pricing engine
- order numbers through the identifier issuer
- item snapshots (name and unit price frozen at order time)
- table occupancy claimed when a dine-in order opens at a table
"""

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import func
from sqlmodel import Session, select

from . import events
from .db import atomic
from .errors import ResourceNotFoundError, ValidationError
from .identifiers import issue_order_number
from .models import (
    KOT,
    Bill,
    BillStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentStatus,
    PrepStatus,
    Table,
    TableStatus,
)
from .pricing import calculate_totals, to_decimal
from .settings import settings

logger = logging.getLogger(__name__)

# Orders in these states no longer hold a table or take payment
CLOSED_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.MERGED)


def _item_value(item: object, *names: str, default: object = None) -> object:
    for name in names:
        if isinstance(item, dict):
            if name in item:
                return item[name]
        elif hasattr(item, name):
            return getattr(item, name)
    return default


def parse_order_type(value: OrderType | str) -> OrderType:
    try:
        return OrderType(value)
    except ValueError:
        raise ValidationError(
            f"Invalid order type. Must be one of: {', '.join(t.value for t in OrderType)}"
        )


def parse_order_status(value: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status. Must be one of: {', '.join(s.value for s in OrderStatus)}"
        )


def is_active_order(order: Order) -> bool:
    return (
        order.payment_status == PaymentStatus.PENDING
        and order.status not in CLOSED_ORDER_STATUSES
    )


def find_active_orders_for_table(session: Session, tenant_id: str, table_id: int) -> list[Order]:
    """Unpaid orders still open at a table, oldest first"""
    statement = (
        select(Order)
        .where(Order.tenant_id == tenant_id)
        .where(Order.table_id == table_id)
        .where(Order.payment_status == PaymentStatus.PENDING)
        .where(Order.status.not_in(CLOSED_ORDER_STATUSES))
        .order_by(Order.created_at.asc(), Order.id.asc())
    )
    return list(session.exec(statement).all())


def claim_table_for_order(session: Session, tenant_id: str, table_id: int, outlet_id: str) -> Table:
    """
    Mark a table OCCUPIED for a new order.

    AVAILABLE and RESERVED tables become OCCUPIED. An OCCUPIED table (seated
    through assign_table) is accepted only while it holds no active order.
    """
    table = session.exec(
        select(Table).where(Table.id == table_id, Table.tenant_id == tenant_id)
    ).first()
    if not table:
        raise ResourceNotFoundError("Table", table_id)
    if not table.is_active:
        raise ValidationError(f"Table {table.table_number} is not active")
    if table.outlet_id != outlet_id:
        raise ValidationError(
            f"Table {table.table_number} belongs to outlet {table.outlet_id}, not {outlet_id}"
        )

    if table.status == TableStatus.OCCUPIED:
        if find_active_orders_for_table(session, tenant_id, table.id):
            raise ValidationError(f"Table {table.table_number} already has an active order")
    elif table.status.can_transition_to(TableStatus.OCCUPIED):
        now = datetime.now(timezone.utc)
        table.status = TableStatus.OCCUPIED
        table.status_updated_at = now
        table.updated_at = now
        session.add(table)
    else:
        raise ValidationError(
            f"Table {table.table_number} cannot take orders. Current status: {table.status.value}"
        )
    return table


def add_order_item(session: Session, order: Order, item: object, total_price_cents: int) -> OrderItem:
    order_item = OrderItem(
        order_id=order.id,
        menu_item_id=str(_item_value(item, "menu_item_id")),
        name=str(_item_value(item, "menu_item_name", "name")),
        quantity=_item_value(item, "quantity"),
        unit_price=to_decimal(_item_value(item, "unit_price"), "unit price"),
        total_price_cents=total_price_cents,
        special_instructions=_item_value(item, "special_instructions"),
        status=_item_value(item, "status", default=PrepStatus.PENDING),
    )
    session.add(order_item)
    return order_item


def create_order(
    session: Session,
    tenant_id: str,
    outlet_id: str,
    order_type: OrderType | str,
    items: Iterable[object],
    table_id: int | None = None,
    customer_id: str | None = None,
    notes: str | None = None,
    tax_rate: object = None,
) -> Order:
    """Create a PENDING order with its item snapshots in one transaction."""
    items = list(items or [])
    if not items:
        raise ValidationError("Order must contain at least one item")
    if not outlet_id:
        raise ValidationError("Outlet ID is required")
    order_kind = parse_order_type(order_type)
    for index, item in enumerate(items):
        if not _item_value(item, "menu_item_id"):
            raise ValidationError(f"Menu item ID is required at item {index}")
        if not _item_value(item, "menu_item_name", "name"):
            raise ValidationError(f"Menu item name is required at item {index}")

    rate = settings.default_tax_rate if tax_rate is None else to_decimal(tax_rate, "tax rate")
    totals = calculate_totals(items, rate)

    with atomic(session, "create order"):
        if table_id is not None:
            claim_table_for_order(session, tenant_id, table_id, outlet_id)

        order = Order(
            tenant_id=tenant_id,
            outlet_id=outlet_id,
            order_number=issue_order_number(session, tenant_id, outlet_id),
            table_id=table_id,
            customer_id=customer_id,
            order_type=order_kind,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            total_cents=totals.total_cents,
            tax_rate=rate,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            notes=notes,
        )
        session.add(order)
        session.flush()

        for item, line in zip(items, totals.lines):
            add_order_item(session, order, item, line.total_cents)

    session.refresh(order)
    logger.info(
        f"Order {order.order_number} created for outlet {outlet_id} "
        f"({len(items)} items, total {totals.total})"
    )
    events.publish_order_update(tenant_id, {
        "type": "order_created",
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
    }, table_id=order.table_id)
    return order


def get_order(session: Session, tenant_id: str, order_id: int) -> Order:
    order = session.exec(
        select(Order).where(Order.id == order_id, Order.tenant_id == tenant_id)
    ).first()
    if not order:
        raise ResourceNotFoundError("Order", order_id)
    return order


def get_order_items(session: Session, order_id: int) -> list[OrderItem]:
    statement = select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id.asc())
    return list(session.exec(statement).all())


def list_orders(
    session: Session,
    tenant_id: str,
    outlet_id: str | None = None,
    table_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], dict]:
    if page < 1 or limit < 1:
        raise ValidationError("Page and limit must be positive")

    conditions = [Order.tenant_id == tenant_id]
    if outlet_id:
        conditions.append(Order.outlet_id == outlet_id)
    if table_id is not None:
        conditions.append(Order.table_id == table_id)
    if status:
        conditions.append(Order.status == parse_order_status(status))
    if payment_status:
        try:
            conditions.append(Order.payment_status == PaymentStatus(payment_status))
        except ValueError:
            raise ValidationError(
                f"Invalid payment status. Must be one of: {', '.join(s.value for s in PaymentStatus)}"
            )

    total = session.exec(select(func.count()).select_from(Order).where(*conditions)).one()
    orders = session.exec(
        select(Order)
        .where(*conditions)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    total_pages = (total + limit - 1) // limit
    meta = {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
    return list(orders), meta


def update_order_status(session: Session, tenant_id: str, order_id: int, status: OrderStatus | str) -> Order:
    target = parse_order_status(status)
    order = get_order(session, tenant_id, order_id)
    current = order.status

    if current.is_terminal:
        raise ValidationError(
            f"Order {order.order_number} is {current.value} and can no longer change status"
        )
    if not current.can_transition_to(target):
        raise ValidationError(
            f"Invalid status transition for order {order.order_number}: "
            f"{current.value} -> {target.value}"
        )
    if target == OrderStatus.CANCELLED:
        if order.payment_status == PaymentStatus.PAID:
            raise ValidationError(f"Order {order.order_number} has already been paid and cannot be cancelled")
        paid_bill = session.exec(
            select(Bill).where(Bill.order_id == order.id, Bill.status == BillStatus.PAID)
        ).first()
        if paid_bill:
            raise ValidationError(
                f"Order {order.order_number} has partial payments (bill {paid_bill.bill_number}) "
                f"and cannot be cancelled"
            )

    with atomic(session, "update order status"):
        now = datetime.now(timezone.utc)
        order.status = target
        order.updated_at = now
        if target == OrderStatus.CANCELLED:
            order.payment_status = PaymentStatus.CANCELLED
            _close_open_documents(session, order, now)
        session.add(order)

    session.refresh(order)
    logger.info(f"Order {order.order_number} status {current.value} -> {target.value}")
    events.publish_order_update(tenant_id, {
        "type": "status_update",
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
    }, table_id=order.table_id)
    return order


def _close_open_documents(session: Session, order: Order, now: datetime) -> None:
    """Cancel unpaid bills and live KOTs of an order that is being closed."""
    bills = session.exec(
        select(Bill).where(
            Bill.order_id == order.id,
            Bill.status.in_((BillStatus.PENDING, BillStatus.SPLIT)),
        )
    ).all()
    for bill in bills:
        bill.status = BillStatus.CANCELLED
        bill.updated_at = now
        session.add(bill)

    kots = session.exec(
        select(KOT).where(
            KOT.order_id == order.id,
            KOT.status.not_in((PrepStatus.SERVED, PrepStatus.CANCELLED)),
        )
    ).all()
    for kot in kots:
        kot.status = PrepStatus.CANCELLED
        kot.updated_at = now
        session.add(kot)
