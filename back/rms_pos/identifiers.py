"""
Identifier Issuer

Order, bill, invoice and KOT numbers scoped to (tenant, outlet, business date).

Numbers come from an atomic counter row per (tenant, outlet, kind, date):
the row is created with INSERT .. ON CONFLICT DO NOTHING, then bumped with
a single UPDATE that takes the row lock until the caller's transaction ends.
Two requests for the same outlet can never read the same value, however
close together they arrive.
"""

import re
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, select

from .models import IdentifierKind, IdentifierSequence, utcnow

_ORDER_NUMBER_DATE = re.compile(r"-(\d{8})-\d+$")


def outlet_code(outlet_id: str) -> str:
    """Last four alphanumerics of the outlet id, upper-cased (e.g. "A1B2")."""
    cleaned = re.sub(r"[^A-Za-z0-9]", "", str(outlet_id)).upper()
    return cleaned[-4:] or "0000"


def business_date(now: datetime | None = None) -> str:
    return (now or utcnow()).strftime("%Y%m%d")


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(IdentifierSequence)
    if dialect == "sqlite":
        return sqlite.insert(IdentifierSequence)
    raise NotImplementedError(f"Identifier issuance is not supported on {dialect}")


def next_sequence(
    session: Session,
    tenant_id: str,
    outlet_id: str,
    kind: IdentifierKind,
    day: str,
) -> int:
    """Bump and return the counter for (tenant, outlet, kind, day)."""
    insert_stmt = _insert_for(session).values(
        tenant_id=tenant_id,
        outlet_id=outlet_id,
        kind=kind.value,
        business_date=day,
        last_value=0,
    ).on_conflict_do_nothing(
        index_elements=["tenant_id", "outlet_id", "kind", "business_date"]
    )
    session.execute(insert_stmt)

    key = (
        (IdentifierSequence.tenant_id == tenant_id)
        & (IdentifierSequence.outlet_id == outlet_id)
        & (IdentifierSequence.kind == kind.value)
        & (IdentifierSequence.business_date == day)
    )
    session.execute(
        update(IdentifierSequence)
        .where(key)
        .values(last_value=IdentifierSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    return session.exec(select(IdentifierSequence.last_value).where(key)).one()


def issue_number(
    session: Session,
    tenant_id: str,
    outlet_id: str,
    kind: IdentifierKind,
    now: datetime | None = None,
) -> str:
    """Issue PREFIX-OUTLET-YYYYMMDD-NNNN, e.g. ORD-A1B2-20240105-0007."""
    day = business_date(now)
    seq = next_sequence(session, tenant_id, outlet_id, kind, day)
    return f"{kind.value}-{outlet_code(outlet_id)}-{day}-{seq:04d}"


def issue_order_number(session: Session, tenant_id: str, outlet_id: str) -> str:
    return issue_number(session, tenant_id, outlet_id, IdentifierKind.ORDER)


def issue_bill_number(session: Session, tenant_id: str, outlet_id: str) -> str:
    return issue_number(session, tenant_id, outlet_id, IdentifierKind.BILL)


def issue_invoice_number(session: Session, tenant_id: str, outlet_id: str) -> str:
    return issue_number(session, tenant_id, outlet_id, IdentifierKind.INVOICE)


def issue_kot_number(session: Session, tenant_id: str, outlet_id: str, order_number: str) -> str:
    """
    KOT numbers embed the order number: KOT-<order_number>-NN.

    The counter is keyed on the business date inside the order number, not
    on today, so a ticket regenerated on a later day still draws from the
    sequence shared by every other ticket of that order's day.
    """
    match = _ORDER_NUMBER_DATE.search(order_number)
    day = match.group(1) if match else business_date()
    seq = next_sequence(session, tenant_id, outlet_id, IdentifierKind.KOT, day)
    return f"{IdentifierKind.KOT.value}-{order_number}-{seq:02d}"
