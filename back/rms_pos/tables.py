"""
Table Coordinator

Physical table state for each outlet and table merges.

Status machine:
    AVAILABLE    -> OCCUPIED, RESERVED, OUT_OF_ORDER
    OCCUPIED     -> CLEANING
    CLEANING     -> AVAILABLE, OUT_OF_ORDER
    RESERVED     -> AVAILABLE, OCCUPIED, OUT_OF_ORDER
    OUT_OF_ORDER -> AVAILABLE
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from sqlalchemy import func, update
from sqlmodel import Session, select

from . import events
from .db import atomic
from .errors import ResourceNotFoundError, ValidationError
from .identifiers import issue_order_number
from .models import (
    Bill,
    BillStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentStatus,
    Table,
    TableStatus,
)
from .orders import CLOSED_ORDER_STATUSES, add_order_item, find_active_orders_for_table, get_order_items
from .pricing import from_cents

logger = logging.getLogger(__name__)


def parse_table_status(value: TableStatus | str) -> TableStatus:
    try:
        return TableStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid table status. Must be one of: {', '.join(s.value for s in TableStatus)}"
        )


def _check_capacity(capacity: object) -> None:
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise ValidationError(f"Capacity must be a whole number of at least 1: {capacity!r}")


def _ensure_unique_number(
    session: Session,
    tenant_id: str,
    outlet_id: str,
    table_number: str,
    exclude_id: int | None = None,
) -> None:
    statement = select(Table).where(
        Table.tenant_id == tenant_id,
        Table.outlet_id == outlet_id,
        Table.table_number == table_number,
    )
    if exclude_id is not None:
        statement = statement.where(Table.id != exclude_id)
    if session.exec(statement).first():
        raise ValidationError(f"Table {table_number} already exists in outlet {outlet_id}")


# ============ CRUD ============

def create_table(
    session: Session,
    tenant_id: str,
    outlet_id: str,
    table_number: str,
    capacity: int,
    section: str | None = None,
    is_active: bool = True,
) -> Table:
    if not outlet_id:
        raise ValidationError("Outlet ID is required")
    if not table_number:
        raise ValidationError("Table number is required")
    _check_capacity(capacity)
    _ensure_unique_number(session, tenant_id, outlet_id, table_number)

    with atomic(session, "create table"):
        table = Table(
            tenant_id=tenant_id,
            outlet_id=outlet_id,
            table_number=table_number,
            capacity=capacity,
            section=section,
            is_active=is_active,
            status=TableStatus.AVAILABLE,
            status_updated_at=datetime.now(timezone.utc),
        )
        session.add(table)

    session.refresh(table)
    logger.info(f"Table {table.table_number} created in outlet {outlet_id}")
    return table


def get_table(session: Session, tenant_id: str, table_id: int) -> Table:
    table = session.exec(
        select(Table).where(Table.id == table_id, Table.tenant_id == tenant_id)
    ).first()
    if not table:
        raise ResourceNotFoundError("Table", table_id)
    return table


def update_table(
    session: Session,
    tenant_id: str,
    table_id: int,
    table_number: str | None = None,
    capacity: int | None = None,
    section: str | None = None,
    is_active: bool | None = None,
) -> Table:
    table = get_table(session, tenant_id, table_id)

    if table_number is not None:
        if not table_number:
            raise ValidationError("Table number is required")
        if table_number != table.table_number:
            _ensure_unique_number(session, tenant_id, table.outlet_id, table_number, exclude_id=table.id)
    if capacity is not None:
        _check_capacity(capacity)

    with atomic(session, "update table"):
        if table_number is not None:
            table.table_number = table_number
        if capacity is not None:
            table.capacity = capacity
        if section is not None:
            table.section = section
        if is_active is not None:
            table.is_active = is_active
        table.updated_at = datetime.now(timezone.utc)
        session.add(table)

    session.refresh(table)
    return table


def delete_table(session: Session, tenant_id: str, table_id: int) -> None:
    """Delete a table that never held an order. Tables with history are deactivated instead."""
    table = get_table(session, tenant_id, table_id)
    has_orders = session.exec(
        select(Order.id).where(Order.tenant_id == tenant_id, Order.table_id == table.id)
    ).first()
    if has_orders is not None:
        raise ValidationError(
            f"Table {table.table_number} has order history and cannot be deleted; deactivate it instead"
        )

    with atomic(session, "delete table"):
        session.delete(table)
    logger.info(f"Table {table_id} deleted")


def list_tables(
    session: Session,
    tenant_id: str,
    outlet_id: str | None = None,
    status: str | None = None,
    section: str | None = None,
    is_active: bool | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Table], dict]:
    if page < 1 or limit < 1:
        raise ValidationError("Page and limit must be positive")

    conditions = [Table.tenant_id == tenant_id]
    if outlet_id:
        conditions.append(Table.outlet_id == outlet_id)
    if status:
        conditions.append(Table.status == parse_table_status(status))
    if section:
        conditions.append(Table.section == section)
    if is_active is not None:
        conditions.append(Table.is_active == is_active)

    total = session.exec(select(func.count()).select_from(Table).where(*conditions)).one()
    tables = session.exec(
        select(Table)
        .where(*conditions)
        .order_by(Table.outlet_id.asc(), Table.table_number.asc())
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
    return list(tables), meta


# ============ STATUS ============

def update_table_status(session: Session, tenant_id: str, table_id: int, status: TableStatus | str) -> Table:
    target = parse_table_status(status)
    table = get_table(session, tenant_id, table_id)
    current = table.status

    if not current.can_transition_to(target):
        raise ValidationError(
            f"Invalid status transition for table {table.table_number}: {current.value} -> {target.value}"
        )
    if current == TableStatus.OCCUPIED and find_active_orders_for_table(session, tenant_id, table.id):
        raise ValidationError(f"Table {table.table_number} still has an active order")

    with atomic(session, "update table status"):
        now = datetime.now(timezone.utc)
        table.status = target
        table.status_updated_at = now
        table.updated_at = now
        session.add(table)

    session.refresh(table)
    logger.info(f"Table {table.table_number} status {current.value} -> {target.value}")
    return table


def get_available_tables(
    session: Session,
    tenant_id: str,
    outlet_id: str,
    capacity: int | None = None,
) -> list[Table]:
    statement = select(Table).where(
        Table.tenant_id == tenant_id,
        Table.outlet_id == outlet_id,
        Table.status == TableStatus.AVAILABLE,
        Table.is_active == True,  # noqa: E712
    )
    if capacity is not None:
        statement = statement.where(Table.capacity >= capacity)
    return list(session.exec(statement.order_by(Table.capacity.asc(), Table.table_number.asc())).all())


def assign_table(
    session: Session,
    tenant_id: str,
    table_id: int,
    party_size: int | None = None,
    customer_id: str | None = None,
    customer_name: str | None = None,
    reservation_time: datetime | None = None,
    notes: str | None = None,
) -> dict:
    """Seat a party at an AVAILABLE table (table becomes OCCUPIED)."""
    table = get_table(session, tenant_id, table_id)
    if not table.is_active:
        raise ValidationError(f"Table {table.table_number} is not active")
    if table.status != TableStatus.AVAILABLE:
        raise ValidationError(
            f"Table {table.table_number} is not available. Current status: {table.status.value}"
        )
    if party_size is not None:
        if party_size < 1:
            raise ValidationError("Party size must be at least 1")
        if party_size > table.capacity:
            raise ValidationError(
                f"Party size ({party_size}) exceeds table capacity ({table.capacity})"
            )

    with atomic(session, "assign table"):
        now = datetime.now(timezone.utc)
        table.status = TableStatus.OCCUPIED
        table.status_updated_at = now
        table.updated_at = now
        session.add(table)

    session.refresh(table)
    logger.info(f"Table {table.table_number} assigned (party of {party_size or 'unknown'})")
    return {
        "table": table,
        "party_size": party_size,
        "customer_id": customer_id,
        "customer_name": customer_name,
        "reservation_time": reservation_time,
        "notes": notes,
        "assigned_at": now,
    }


def release_table(session: Session, tenant_id: str, table_id: int) -> Table:
    """Guests have left: OCCUPIED -> CLEANING."""
    table = get_table(session, tenant_id, table_id)
    if table.status != TableStatus.OCCUPIED:
        raise ValidationError(
            f"Table {table.table_number} is not occupied. Current status: {table.status.value}"
        )
    active = find_active_orders_for_table(session, tenant_id, table.id)
    if active:
        raise ValidationError(
            f"Table {table.table_number} has an active order ({active[0].order_number}) and cannot be released"
        )

    with atomic(session, "release table"):
        now = datetime.now(timezone.utc)
        table.status = TableStatus.CLEANING
        table.status_updated_at = now
        table.updated_at = now
        session.add(table)

    session.refresh(table)
    logger.info(f"Table {table.table_number} released for cleaning")
    return table


def get_table_statistics(session: Session, tenant_id: str, outlet_id: str) -> dict:
    rows = session.exec(
        select(Table.status, func.count())
        .where(Table.tenant_id == tenant_id, Table.outlet_id == outlet_id, Table.is_active == True)  # noqa: E712
        .group_by(Table.status)
    ).all()
    counts = {status.value: 0 for status in TableStatus}
    for status, count in rows:
        counts[TableStatus(status).value] = count

    total = sum(counts.values())
    busy = counts[TableStatus.OCCUPIED.value] + counts[TableStatus.RESERVED.value]
    occupancy_rate = int((Decimal(busy) * 100 / total).to_integral_value(rounding=ROUND_HALF_UP)) if total else 0
    return {
        "outlet_id": outlet_id,
        "total_tables": total,
        "available": counts[TableStatus.AVAILABLE.value],
        "occupied": counts[TableStatus.OCCUPIED.value],
        "reserved": counts[TableStatus.RESERVED.value],
        "cleaning": counts[TableStatus.CLEANING.value],
        "out_of_order": counts[TableStatus.OUT_OF_ORDER.value],
        "occupancy_rate": occupancy_rate,
    }


# ============ MERGE ============

@dataclass
class MergeResult:
    merged_order: Order
    items: list[OrderItem]
    original_order_ids: list[int]
    merged_tables: list[int]
    primary_table_id: int
    cancelled_bill_ids: list[int] = field(default_factory=list)


def merge_tables(session: Session, tenant_id: str, table_ids: Sequence[int]) -> MergeResult:
    """
    Consolidate the unpaid orders of several tables into one order.

    The first table is the primary: the merged order sits there and the table
    is marked OCCUPIED. Originals become MERGED (payment CANCELLED) and point
    to the merged order; their unpaid bills are cancelled.
    """
    ids = list(dict.fromkeys(table_ids or []))
    if len(ids) < 2:
        raise ValidationError("At least 2 distinct tables are required for merging")

    tables = [get_table(session, tenant_id, table_id) for table_id in ids]
    table_outlets = {table.outlet_id for table in tables}
    if len(table_outlets) > 1:
        raise ValidationError("Tables from different outlets cannot be merged")

    orders: list[Order] = []
    for table in tables:
        orders.extend(find_active_orders_for_table(session, tenant_id, table.id))
    if not orders:
        raise ValidationError("No pending orders found for the specified tables")
    if len({order.outlet_id for order in orders}) > 1:
        raise ValidationError("Orders from different outlets cannot be merged")

    order_ids = [order.id for order in orders]
    bills = session.exec(
        select(Bill).where(Bill.tenant_id == tenant_id, Bill.order_id.in_(order_ids))
    ).all()
    paid_bill = next((b for b in bills if b.status == BillStatus.PAID), None)
    if paid_bill:
        raise ValidationError(
            f"Bill {paid_bill.bill_number} has already been paid; its order cannot be merged"
        )

    primary = tables[0]
    if primary.status != TableStatus.OCCUPIED and not primary.status.can_transition_to(TableStatus.OCCUPIED):
        raise ValidationError(
            f"Table {primary.table_number} cannot take the merged order. Current status: {primary.status.value}"
        )

    rates = {order.tax_rate for order in orders}
    outlet_id = orders[0].outlet_id

    with atomic(session, "merge tables"):
        now = datetime.now(timezone.utc)
        merged = Order(
            tenant_id=tenant_id,
            outlet_id=outlet_id,
            order_number=issue_order_number(session, tenant_id, outlet_id),
            table_id=primary.id,
            order_type=OrderType.DINE_IN,
            subtotal_cents=sum(order.subtotal_cents for order in orders),
            tax_cents=sum(order.tax_cents for order in orders),
            total_cents=sum(order.total_cents for order in orders),
            tax_rate=rates.pop() if len(rates) == 1 else None,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            notes=f"Merged from tables: {', '.join(t.table_number for t in tables)}",
        )
        session.add(merged)
        session.flush()

        items = []
        for order in orders:
            for item in get_order_items(session, order.id):
                items.append(add_order_item(session, merged, item, item.total_price_cents))

        # Gated on the unpaid state read above; a payment that commits first
        # makes the row count fall short and the merge aborts
        flipped = session.execute(
            update(Order)
            .where(
                Order.tenant_id == tenant_id,
                Order.id.in_(order_ids),
                Order.payment_status == PaymentStatus.PENDING,
                Order.status.not_in(CLOSED_ORDER_STATUSES),
            )
            .values(
                status=OrderStatus.MERGED,
                payment_status=PaymentStatus.CANCELLED,
                merged_into_order_id=merged.id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != len(order_ids):
            raise ValidationError("An order was paid or closed while the tables were being merged; merge aborted")

        cancelled_bill_ids = [
            bill.id for bill in bills if bill.status in (BillStatus.PENDING, BillStatus.SPLIT)
        ]
        if cancelled_bill_ids:
            cancelled = session.execute(
                update(Bill)
                .where(
                    Bill.id.in_(cancelled_bill_ids),
                    Bill.status.in_((BillStatus.PENDING, BillStatus.SPLIT)),
                )
                .values(status=BillStatus.CANCELLED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if cancelled.rowcount != len(cancelled_bill_ids):
                raise ValidationError("A bill was paid while the tables were being merged; merge aborted")

        if primary.status != TableStatus.OCCUPIED:
            primary.status = TableStatus.OCCUPIED
            primary.status_updated_at = now
            primary.updated_at = now
            session.add(primary)

    session.refresh(merged)
    for item in items:
        session.refresh(item)
    logger.info(
        f"Merged {len(orders)} orders from tables {ids} into {merged.order_number} "
        f"(total {from_cents(merged.total_cents)})"
    )
    events.publish_order_update(tenant_id, {
        "type": "tables_merged",
        "order_id": merged.id,
        "order_number": merged.order_number,
        "merged_order_ids": order_ids,
        "table_ids": ids,
    }, table_id=primary.id)
    return MergeResult(
        merged_order=merged,
        items=items,
        original_order_ids=order_ids,
        merged_tables=ids,
        primary_table_id=primary.id,
        cancelled_bill_ids=cancelled_bill_ids,
    )
