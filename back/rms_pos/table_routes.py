from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from . import tables
from .db import get_session
from .models import TableAssign, TableCreate, TableStatusUpdate, TableUpdate
from .security import TenantContext, get_tenant_context
from .serializers import api_response, table_to_dict

router = APIRouter()

Tenant = Annotated[TenantContext, Depends(get_tenant_context)]


@router.get("/")
def list_tables(
    ctx: Tenant,
    session: Session = Depends(get_session),
    outlet_id: str | None = None,
    status: str | None = None,
    section: str | None = None,
    is_active: bool | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
) -> dict:
    found, meta = tables.list_tables(
        session,
        ctx.tenant_id,
        outlet_id=outlet_id,
        status=status,
        section=section,
        is_active=is_active,
        page=page,
        limit=limit,
    )
    return api_response([table_to_dict(t) for t in found], f"Retrieved {len(found)} tables", meta=meta)


@router.post("/", status_code=201)
def create_table(table_data: TableCreate, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    table = tables.create_table(
        session,
        ctx.tenant_id,
        outlet_id=table_data.outlet_id,
        table_number=table_data.table_number,
        capacity=table_data.capacity,
        section=table_data.section,
        is_active=table_data.is_active,
    )
    return api_response(table_to_dict(table), "Table created successfully")


@router.get("/available/{outlet_id}")
def get_available_tables(
    outlet_id: str,
    ctx: Tenant,
    session: Session = Depends(get_session),
    capacity: int | None = Query(default=None, ge=1),
) -> dict:
    found = tables.get_available_tables(session, ctx.tenant_id, outlet_id, capacity=capacity)
    return api_response([table_to_dict(t) for t in found], f"Found {len(found)} available tables")


@router.get("/statistics/{outlet_id}")
def get_table_statistics(outlet_id: str, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    stats = tables.get_table_statistics(session, ctx.tenant_id, outlet_id)
    return api_response(stats, "Table statistics retrieved successfully")


@router.get("/{table_id}")
def get_table(table_id: int, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    table = tables.get_table(session, ctx.tenant_id, table_id)
    return api_response(table_to_dict(table), "Table retrieved successfully")


@router.put("/{table_id}")
def update_table(
    table_id: int,
    table_update: TableUpdate,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    table = tables.update_table(
        session,
        ctx.tenant_id,
        table_id,
        table_number=table_update.table_number,
        capacity=table_update.capacity,
        section=table_update.section,
        is_active=table_update.is_active,
    )
    return api_response(table_to_dict(table), "Table updated successfully")


@router.delete("/{table_id}")
def delete_table(table_id: int, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    tables.delete_table(session, ctx.tenant_id, table_id)
    return api_response({"id": table_id}, "Table deleted successfully")


@router.put("/{table_id}/status")
def update_table_status(
    table_id: int,
    status_update: TableStatusUpdate,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    table = tables.update_table_status(session, ctx.tenant_id, table_id, status_update.status)
    return api_response(table_to_dict(table), f"Table status updated to {table.status.value}")


@router.post("/{table_id}/assign")
def assign_table(
    table_id: int,
    ctx: Tenant,
    session: Session = Depends(get_session),
    assignment: TableAssign | None = None,
) -> dict:
    assignment = assignment or TableAssign()
    result = tables.assign_table(
        session,
        ctx.tenant_id,
        table_id,
        party_size=assignment.party_size,
        customer_id=assignment.customer_id,
        customer_name=assignment.customer_name,
        reservation_time=assignment.reservation_time,
        notes=assignment.notes,
    )
    data = {
        **table_to_dict(result["table"]),
        "assignment": {
            "party_size": result["party_size"],
            "customer_id": result["customer_id"],
            "customer_name": result["customer_name"],
            "reservation_time": result["reservation_time"].isoformat() if result["reservation_time"] else None,
            "notes": result["notes"],
            "assigned_at": result["assigned_at"].isoformat(),
        },
    }
    return api_response(data, "Table assigned successfully")


@router.post("/{table_id}/release")
def release_table(table_id: int, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    table = tables.release_table(session, ctx.tenant_id, table_id)
    return api_response(table_to_dict(table), "Table released successfully")
