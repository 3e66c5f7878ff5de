from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from . import kitchen
from .db import get_session
from .models import KOTAssign, KOTGenerate, KOTPreparationTimeUpdate, KOTStatusUpdate
from .security import TenantContext, get_tenant_context
from .serializers import api_response, kot_item_to_dict, kot_to_dict

router = APIRouter()

Tenant = Annotated[TenantContext, Depends(get_tenant_context)]


@router.post("/generate", status_code=201)
def generate_kot(kot_data: KOTGenerate, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    kot = kitchen.generate_kot(
        session, ctx.tenant_id, kot_data.order_id, priority=kot_data.priority, notes=kot_data.notes
    )
    return api_response(kot_to_dict(kot), "KOT generated successfully")


@router.get("/kitchen/display")
def get_kitchen_display(
    ctx: Tenant,
    session: Session = Depends(get_session),
    outlet_id: str | None = None,
    status: str | None = None,
    order_by: str = "created_at",
    direction: str = "ASC",
    limit: int = Query(default=50, ge=1, le=200),
) -> dict:
    kots = kitchen.get_kitchen_display(
        session,
        ctx.tenant_id,
        outlet_id=outlet_id,
        status=status,
        order_by=order_by,
        direction=direction,
        limit=limit,
    )
    return api_response(
        [kot_to_dict(kot) for kot in kots],
        f"Retrieved {len(kots)} KOTs for kitchen display",
    )


@router.get("/statistics/{outlet_id}")
def get_kot_statistics(outlet_id: str, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    stats = kitchen.get_kot_statistics(session, ctx.tenant_id, outlet_id)
    return api_response(stats, "KOT statistics retrieved successfully")


@router.get("/overdue/{outlet_id}")
def get_overdue_kots(outlet_id: str, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    overdue = kitchen.get_overdue_kots(session, ctx.tenant_id, outlet_id)
    data = [
        {**kot_to_dict(entry["kot"]), "overdue_by_minutes": entry["overdue_by_minutes"]}
        for entry in overdue
    ]
    return api_response(data, f"Found {len(data)} overdue KOTs")


@router.get("/{kot_id}")
def get_kot(kot_id: int, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    kot = kitchen.get_kot(session, ctx.tenant_id, kot_id)
    return api_response(kot_to_dict(kot), "KOT retrieved successfully")


@router.put("/{kot_id}/status")
def update_kot_status(
    kot_id: int,
    status_update: KOTStatusUpdate,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    kot = kitchen.update_kot_status(session, ctx.tenant_id, kot_id, status_update.status)
    return api_response(kot_to_dict(kot), f"KOT status updated to {kot.status.value}")


@router.put("/{kot_id}/items/{item_id}/status")
def update_kot_item_status(
    kot_id: int,
    item_id: int,
    status_update: KOTStatusUpdate,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    kot, item = kitchen.update_kot_item_status(
        session, ctx.tenant_id, kot_id, item_id, status_update.status
    )
    return api_response(
        {**kot_item_to_dict(item), "kot_status": kot.status.value},
        f"KOT item status updated to {item.status.value}",
    )


@router.post("/{kot_id}/assign")
def assign_kot(
    kot_id: int,
    assignment: KOTAssign,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    kot = kitchen.assign_kot(session, ctx.tenant_id, kot_id, assignment.staff_id)
    return api_response(kot_to_dict(kot), "KOT assigned successfully")


@router.put("/{kot_id}/preparation-time")
def update_preparation_time(
    kot_id: int,
    time_update: KOTPreparationTimeUpdate,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    kot = kitchen.update_preparation_time(
        session, ctx.tenant_id, kot_id, time_update.estimated_completion_time
    )
    return api_response(kot_to_dict(kot), "Preparation time updated successfully")
