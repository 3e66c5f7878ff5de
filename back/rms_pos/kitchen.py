"""
Kitchen Ticket Dispatcher

Kitchen order tickets (KOTs): one live ticket per order, mirroring the
order's items. Staff move tickets and items through
PENDING -> IN_PROGRESS -> READY -> SERVED (tickets may also be CANCELLED).
Item progress rolls the ticket forward; the ticket never moves backwards.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import Session, select

from . import events
from .db import atomic
from .errors import ResourceNotFoundError, ValidationError
from .identifiers import issue_kot_number
from .models import (
    ITEM_PREP_STATUSES,
    KOT,
    PREP_SEQUENCE,
    KOTItem,
    KOTPriority,
    OrderItem,
    PaymentStatus,
    PrepStatus,
    as_utc,
)
from .orders import CLOSED_ORDER_STATUSES, get_order, get_order_items
from .settings import settings

logger = logging.getLogger(__name__)

LIVE_STATUSES = (PrepStatus.PENDING, PrepStatus.IN_PROGRESS, PrepStatus.READY)
DISPLAY_ORDERINGS = ("created_at", "priority", "estimated_completion_time")
HIGH_PRIORITIES = (KOTPriority.HIGH, KOTPriority.URGENT)


def parse_prep_status(value: PrepStatus | str) -> PrepStatus:
    try:
        return PrepStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status. Must be one of: {', '.join(s.value for s in PrepStatus)}"
        )


def parse_priority(value: KOTPriority | str) -> KOTPriority:
    try:
        return KOTPriority(value)
    except ValueError:
        raise ValidationError(
            f"Invalid priority. Must be one of: {', '.join(p.value for p in KOTPriority)}"
        )


def estimate_completion(items: list[OrderItem], now: datetime) -> datetime:
    minutes = max(
        settings.kot_minimum_minutes,
        sum(item.quantity for item in items) * settings.kot_minutes_per_item,
    )
    return now + timedelta(minutes=minutes)


def compute_kot_status_from_items(items: list[KOTItem]) -> PrepStatus:
    """Status implied by item progress (the slowest item wins)."""
    if not items:
        return PrepStatus.PENDING
    if all(item.status == PrepStatus.SERVED for item in items):
        return PrepStatus.SERVED
    if all(item.status in (PrepStatus.READY, PrepStatus.SERVED) for item in items):
        return PrepStatus.READY
    if any(item.status != PrepStatus.PENDING for item in items):
        return PrepStatus.IN_PROGRESS
    return PrepStatus.PENDING


def _stamp_kot(kot: KOT, status: PrepStatus, now: datetime) -> None:
    kot.status = status
    kot.updated_at = now
    if status == PrepStatus.IN_PROGRESS and kot.started_at is None:
        kot.started_at = now
    if status in (PrepStatus.READY, PrepStatus.SERVED) and kot.actual_completion_time is None:
        kot.actual_completion_time = now


def _publish(kot: KOT, event_type: str) -> None:
    events.publish_kitchen_update(kot.tenant_id, kot.outlet_id, {
        "type": event_type,
        "kot_id": kot.id,
        "kot_number": kot.kot_number,
        "order_id": kot.order_id,
        "status": kot.status.value,
        "priority": kot.priority.value,
    })


# ============ TICKETS ============

def generate_kot(
    session: Session,
    tenant_id: str,
    order_id: int,
    priority: KOTPriority | str = KOTPriority.NORMAL,
    notes: str | None = None,
) -> KOT:
    kot_priority = parse_priority(priority)
    order = get_order(session, tenant_id, order_id)
    if order.status in CLOSED_ORDER_STATUSES or order.payment_status == PaymentStatus.CANCELLED:
        raise ValidationError(f"Order {order.order_number} is {order.status.value}; no KOT can be generated")

    items = get_order_items(session, order.id)
    if not items:
        raise ValidationError(f"Order {order.order_number} has no items")

    live = session.exec(
        select(KOT).where(
            KOT.tenant_id == tenant_id,
            KOT.order_id == order.id,
            KOT.status != PrepStatus.CANCELLED,
        )
    ).first()
    if live:
        raise ValidationError(f"Order {order.order_number} already has KOT {live.kot_number}")

    with atomic(session, "generate KOT"):
        now = datetime.now(timezone.utc)
        kot = KOT(
            tenant_id=tenant_id,
            outlet_id=order.outlet_id,
            kot_number=issue_kot_number(session, tenant_id, order.outlet_id, order.order_number),
            order_id=order.id,
            order_number=order.order_number,
            table_id=order.table_id,
            order_type=order.order_type,
            priority=kot_priority,
            status=PrepStatus.PENDING,
            notes=notes,
            estimated_completion_time=estimate_completion(items, now),
            created_at=now,
            updated_at=now,
        )
        session.add(kot)
        session.flush()
        for item in items:
            session.add(KOTItem(
                kot_id=kot.id,
                order_item_id=item.id,
                menu_item_id=item.menu_item_id,
                name=item.name,
                quantity=item.quantity,
                special_instructions=item.special_instructions,
                status=PrepStatus.PENDING,
            ))

    session.refresh(kot)
    logger.info(
        f"KOT {kot.kot_number} generated for order {order.order_number} "
        f"({len(items)} items, {kot_priority.value})"
    )
    _publish(kot, "kot_created")
    return kot


def get_kot(session: Session, tenant_id: str, kot_id: int) -> KOT:
    kot = session.exec(
        select(KOT).where(KOT.id == kot_id, KOT.tenant_id == tenant_id)
    ).first()
    if not kot:
        raise ResourceNotFoundError("KOT", kot_id)
    return kot


def get_kot_items(session: Session, kot_id: int) -> list[KOTItem]:
    statement = select(KOTItem).where(KOTItem.kot_id == kot_id).order_by(KOTItem.id.asc())
    return list(session.exec(statement).all())


def update_kot_status(session: Session, tenant_id: str, kot_id: int, status: PrepStatus | str) -> KOT:
    target = parse_prep_status(status)
    kot = get_kot(session, tenant_id, kot_id)
    current = kot.status

    if current.is_terminal:
        raise ValidationError(f"KOT {kot.kot_number} is {current.value} and can no longer change status")
    if not current.can_transition_to(target):
        raise ValidationError(
            f"Invalid status transition for KOT {kot.kot_number}: {current.value} -> {target.value}"
        )

    with atomic(session, "update KOT status"):
        _stamp_kot(kot, target, datetime.now(timezone.utc))
        session.add(kot)

    session.refresh(kot)
    logger.info(f"KOT {kot.kot_number} status {current.value} -> {target.value}")
    _publish(kot, "kot_status_update")
    return kot


def update_kot_item_status(
    session: Session,
    tenant_id: str,
    kot_id: int,
    item_id: int,
    status: PrepStatus | str,
) -> tuple[KOT, KOTItem]:
    """Move one ticket item forward; the ticket follows its items."""
    target = parse_prep_status(status)
    if target not in ITEM_PREP_STATUSES:
        raise ValidationError("Individual KOT items cannot be cancelled; cancel the KOT instead")

    kot = get_kot(session, tenant_id, kot_id)
    if kot.status.is_terminal:
        raise ValidationError(f"KOT {kot.kot_number} is {kot.status.value}; its items can no longer change")

    item = session.exec(
        select(KOTItem).where(KOTItem.id == item_id, KOTItem.kot_id == kot.id)
    ).first()
    if not item:
        raise ResourceNotFoundError("KOT item", item_id)

    current = item.status
    if current.is_terminal:
        raise ValidationError(f"Item {item.name} is {current.value} and can no longer change status")
    if PREP_SEQUENCE.index(target) <= PREP_SEQUENCE.index(current):
        raise ValidationError(
            f"Invalid status transition for item {item.name}: {current.value} -> {target.value}"
        )

    with atomic(session, "update KOT item status"):
        now = datetime.now(timezone.utc)
        item.status = target
        if target == PrepStatus.IN_PROGRESS and item.started_at is None:
            item.started_at = now
        if target in (PrepStatus.READY, PrepStatus.SERVED) and item.completed_at is None:
            item.completed_at = now
        session.add(item)

        if item.order_item_id is not None:
            order_item = session.get(OrderItem, item.order_item_id)
            if order_item and PREP_SEQUENCE.index(order_item.status) < PREP_SEQUENCE.index(target):
                order_item.status = target
                session.add(order_item)

        derived = compute_kot_status_from_items(get_kot_items(session, kot.id))
        if PREP_SEQUENCE.index(derived) > PREP_SEQUENCE.index(kot.status):
            _stamp_kot(kot, derived, now)
            session.add(kot)
        else:
            kot.updated_at = now
            session.add(kot)

    session.refresh(kot)
    session.refresh(item)
    logger.info(f"KOT {kot.kot_number} item {item.name} {current.value} -> {target.value}")
    _publish(kot, "kot_item_status_update")
    return kot, item


def assign_kot(session: Session, tenant_id: str, kot_id: int, staff_id: str | None) -> KOT:
    """Hand a ticket to a cook; a PENDING ticket starts preparation."""
    if not staff_id:
        raise ValidationError("Staff ID is required for assignment")
    kot = get_kot(session, tenant_id, kot_id)
    if kot.status.is_terminal:
        raise ValidationError(f"KOT {kot.kot_number} is {kot.status.value} and cannot be assigned")

    with atomic(session, "assign KOT"):
        now = datetime.now(timezone.utc)
        kot.assigned_to = staff_id
        kot.assigned_at = now
        if kot.status == PrepStatus.PENDING:
            _stamp_kot(kot, PrepStatus.IN_PROGRESS, now)
        kot.updated_at = now
        session.add(kot)

    session.refresh(kot)
    logger.info(f"KOT {kot.kot_number} assigned to {staff_id}")
    _publish(kot, "kot_assigned")
    return kot


def update_preparation_time(
    session: Session,
    tenant_id: str,
    kot_id: int,
    estimated_completion_time: datetime,
) -> KOT:
    new_time = as_utc(estimated_completion_time)
    if new_time is None:
        raise ValidationError("Estimated completion time is required")
    if new_time <= datetime.now(timezone.utc):
        raise ValidationError("Estimated completion time must be in the future")

    kot = get_kot(session, tenant_id, kot_id)
    if kot.status.is_terminal:
        raise ValidationError(f"KOT {kot.kot_number} is {kot.status.value}; preparation time is fixed")

    with atomic(session, "update preparation time"):
        kot.estimated_completion_time = new_time
        kot.updated_at = datetime.now(timezone.utc)
        session.add(kot)

    session.refresh(kot)
    _publish(kot, "kot_time_update")
    return kot


# ============ KITCHEN DISPLAY ============

def get_kitchen_display(
    session: Session,
    tenant_id: str,
    outlet_id: str | None = None,
    status: str | None = None,
    order_by: str = "created_at",
    direction: str = "ASC",
    limit: int = 50,
) -> list[KOT]:
    """
    Tickets for the kitchen screen. Without a status filter only live
    tickets (not SERVED or CANCELLED) are shown.
    """
    if order_by not in DISPLAY_ORDERINGS:
        raise ValidationError(f"Invalid order_by. Must be one of: {', '.join(DISPLAY_ORDERINGS)}")
    direction = (direction or "ASC").upper()
    if direction not in ("ASC", "DESC"):
        raise ValidationError("Invalid direction. Must be ASC or DESC")
    if limit < 1:
        raise ValidationError("Limit must be positive")

    statement = select(KOT).where(KOT.tenant_id == tenant_id)
    if outlet_id:
        statement = statement.where(KOT.outlet_id == outlet_id)
    if status:
        statement = statement.where(KOT.status == parse_prep_status(status))
    else:
        statement = statement.where(KOT.status.in_(LIVE_STATUSES))

    descending = direction == "DESC"
    if order_by == "priority":
        # Priority is a string column; its rank only exists in Python
        kots = session.exec(statement.order_by(KOT.created_at.asc(), KOT.id.asc())).all()
        ranked = sorted(kots, key=lambda k: k.priority.rank, reverse=descending)
        return ranked[:limit]

    column = getattr(KOT, order_by)
    statement = statement.order_by(column.desc() if descending else column.asc(), KOT.id.asc())
    return list(session.exec(statement.limit(limit)).all())


def _overdue_minutes(kot: KOT, now: datetime) -> int:
    seconds = Decimal((now - as_utc(kot.estimated_completion_time)).total_seconds())
    return int((seconds / 60).to_integral_value(rounding=ROUND_HALF_UP))


def get_overdue_kots(session: Session, tenant_id: str, outlet_id: str) -> list[dict]:
    """Live tickets past their estimate, most overdue first."""
    now = datetime.now(timezone.utc)
    kots = session.exec(
        select(KOT)
        .where(KOT.tenant_id == tenant_id, KOT.outlet_id == outlet_id)
        .where(KOT.status.in_(LIVE_STATUSES))
        .where(KOT.estimated_completion_time < now)
        .order_by(KOT.estimated_completion_time.asc(), KOT.id.asc())
    ).all()
    return [{"kot": kot, "overdue_by_minutes": _overdue_minutes(kot, now)} for kot in kots]


def get_kot_statistics(session: Session, tenant_id: str, outlet_id: str) -> dict:
    now = datetime.now(timezone.utc)
    kots = session.exec(
        select(KOT).where(KOT.tenant_id == tenant_id, KOT.outlet_id == outlet_id)
    ).all()

    counts = {status.value: 0 for status in PrepStatus}
    completion_minutes = []
    overdue = 0
    high_priority = 0
    for kot in kots:
        counts[kot.status.value] += 1
        if kot.actual_completion_time is not None:
            elapsed = as_utc(kot.actual_completion_time) - as_utc(kot.created_at)
            completion_minutes.append(Decimal(elapsed.total_seconds()) / 60)
        if kot.status in LIVE_STATUSES:
            if as_utc(kot.estimated_completion_time) < now:
                overdue += 1
            if kot.priority in HIGH_PRIORITIES:
                high_priority += 1

    average = None
    if completion_minutes:
        average = float(
            (sum(completion_minutes) / len(completion_minutes)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        )
    return {
        "outlet_id": outlet_id,
        "total": len(kots),
        "pending": counts[PrepStatus.PENDING.value],
        "in_progress": counts[PrepStatus.IN_PROGRESS.value],
        "ready": counts[PrepStatus.READY.value],
        "served": counts[PrepStatus.SERVED.value],
        "cancelled": counts[PrepStatus.CANCELLED.value],
        "average_completion_minutes": average,
        "overdue": overdue,
        "high_priority": high_priority,
    }
