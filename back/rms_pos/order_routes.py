"""
Order API Routes

- Order creation, listing and status lifecycle
- Direct order payment
- KOT generation and order split previews
- Table merge
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from . import billing, kitchen, orders, splitting, tables
from .db import get_session
from .models import (
    KOTRequest,
    OrderCreate,
    OrderSplitRequest,
    OrderStatusUpdate,
    PaymentRequest,
    TablesMergeRequest,
)
from .pricing import cents_to_float
from .security import TenantContext, get_tenant_context
from .serializers import (
    api_response,
    kot_to_dict,
    merge_result_to_dict,
    order_to_dict,
    payment_result_to_dict,
    split_fragment_to_dict,
)

router = APIRouter()

Tenant = Annotated[TenantContext, Depends(get_tenant_context)]


@router.post("/", status_code=201)
def create_order(
    order_data: OrderCreate,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    order = orders.create_order(
        session,
        ctx.tenant_id,
        outlet_id=order_data.outlet_id,
        order_type=order_data.order_type,
        items=order_data.items,
        table_id=order_data.table_id,
        customer_id=order_data.customer_id,
        notes=order_data.notes,
        tax_rate=order_data.tax_rate,
    )
    items = orders.get_order_items(session, order.id)
    return api_response(order_to_dict(order, items), "Order created successfully")


@router.get("/")
def list_orders(
    ctx: Tenant,
    session: Session = Depends(get_session),
    outlet_id: str | None = None,
    table_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> dict:
    found, meta = orders.list_orders(
        session,
        ctx.tenant_id,
        outlet_id=outlet_id,
        table_id=table_id,
        status=status,
        payment_status=payment_status,
        page=page,
        limit=limit,
    )
    return api_response(
        [order_to_dict(order) for order in found],
        f"Retrieved {len(found)} orders",
        meta=meta,
    )


@router.post("/merge-tables")
def merge_tables(
    merge_data: TablesMergeRequest,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    result = tables.merge_tables(session, ctx.tenant_id, merge_data.table_ids)
    return api_response(
        merge_result_to_dict(result),
        f"Successfully merged {len(result.merged_tables)} tables",
    )


@router.get("/{order_id}")
def get_order(order_id: int, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    order = orders.get_order(session, ctx.tenant_id, order_id)
    items = orders.get_order_items(session, order.id)
    return api_response(order_to_dict(order, items), "Order retrieved successfully")


@router.put("/{order_id}/status")
def update_order_status(
    order_id: int,
    status_update: OrderStatusUpdate,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    order = orders.update_order_status(session, ctx.tenant_id, order_id, status_update.status)
    return api_response(order_to_dict(order), f"Order status updated to {order.status.value}")


@router.post("/{order_id}/payment")
def process_payment(
    order_id: int,
    payment_data: PaymentRequest,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    result = billing.process_order_payment(
        session,
        ctx.tenant_id,
        order_id,
        payment_data.payments,
        customer_info=payment_data.customer_info,
    )
    return api_response(payment_result_to_dict(result), "Payment processed successfully")


@router.post("/{order_id}/kot", status_code=201)
def generate_kot(
    order_id: int,
    ctx: Tenant,
    session: Session = Depends(get_session),
    kot_data: KOTRequest | None = None,
) -> dict:
    kot_data = kot_data or KOTRequest()
    kot = kitchen.generate_kot(
        session, ctx.tenant_id, order_id, priority=kot_data.priority, notes=kot_data.notes
    )
    return api_response(kot_to_dict(kot), "KOT generated successfully")


@router.post("/{order_id}/split")
def split_order(
    order_id: int,
    split_data: OrderSplitRequest,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    order, fragments = splitting.split_order(
        session,
        ctx.tenant_id,
        order_id,
        split_data.split_type,
        number_of_people=split_data.number_of_people,
        amount_splits=split_data.amount_splits,
        item_splits=[group.item_ids for group in split_data.item_splits or []],
    )
    return api_response(
        {
            "original_order_id": order.id,
            "original_total": cents_to_float(order.total_cents),
            "split_type": split_data.split_type.value,
            "splits": [split_fragment_to_dict(f) for f in fragments],
            "total_splits": len(fragments),
        },
        f"Order split into {len(fragments)} parts",
    )
