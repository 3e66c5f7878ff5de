from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlmodel import Session

from . import billing, splitting
from .db import get_session
from .models import BillAmountSplit, BillEqualSplit, BillGenerate, BillItemSplit, PaymentRequest, SplitType
from .receipt_pdf import render_receipt_pdf
from .security import TenantContext, get_tenant_context
from .serializers import api_response, bill_to_dict, payment_result_to_dict

router = APIRouter()

Tenant = Annotated[TenantContext, Depends(get_tenant_context)]


@router.post("/generate", status_code=201)
def generate_bill(bill_data: BillGenerate, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    bill = billing.generate_bill(
        session,
        ctx.tenant_id,
        bill_data.order_id,
        discounts=bill_data.discounts,
        taxes=bill_data.taxes,
        service_charge_percent=bill_data.service_charge,
        notes=bill_data.notes,
    )
    return api_response(bill_to_dict(bill), "Bill generated successfully")


@router.get("/{bill_id}")
def get_bill(bill_id: int, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    bill = billing.get_bill(session, ctx.tenant_id, bill_id)
    children = billing.get_child_bills(session, bill)
    return api_response(bill_to_dict(bill, children), "Bill retrieved successfully")


@router.post("/{bill_id}/payment")
def process_bill_payment(
    bill_id: int,
    payment_data: PaymentRequest,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    result = billing.process_bill_payment(
        session,
        ctx.tenant_id,
        bill_id,
        payment_data.payments,
        customer_info=payment_data.customer_info,
    )
    return api_response(payment_result_to_dict(result), "Payment processed successfully")


def _split_response(parent, children) -> dict:
    return api_response(
        bill_to_dict(parent, children),
        f"Bill split into {len(children)} parts",
    )


@router.post("/{bill_id}/split/equal")
def split_bill_equally(
    bill_id: int,
    split_data: BillEqualSplit,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    parent, children = splitting.split_bill(
        session, ctx.tenant_id, bill_id, SplitType.EQUAL, number_of_people=split_data.number_of_people
    )
    return _split_response(parent, children)


@router.post("/{bill_id}/split/amount")
def split_bill_by_amount(
    bill_id: int,
    split_data: BillAmountSplit,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    parent, children = splitting.split_bill(
        session, ctx.tenant_id, bill_id, SplitType.BY_AMOUNT, amounts=split_data.amounts
    )
    return _split_response(parent, children)


@router.post("/{bill_id}/split/items")
def split_bill_by_items(
    bill_id: int,
    split_data: BillItemSplit,
    ctx: Tenant,
    session: Session = Depends(get_session),
) -> dict:
    parent, children = splitting.split_bill(
        session,
        ctx.tenant_id,
        bill_id,
        SplitType.BY_ITEMS,
        item_splits=[group.item_ids for group in split_data.item_splits],
    )
    return _split_response(parent, children)


@router.get("/{bill_id}/receipt")
def get_receipt(bill_id: int, ctx: Tenant, session: Session = Depends(get_session)) -> dict:
    receipt = billing.generate_receipt(session, ctx.tenant_id, bill_id)
    return api_response(receipt, "Receipt generated successfully")


@router.get("/{bill_id}/receipt/pdf")
def get_receipt_pdf(bill_id: int, ctx: Tenant, session: Session = Depends(get_session)):
    receipt = billing.generate_receipt(session, ctx.tenant_id, bill_id)
    pdf_buffer = render_receipt_pdf(receipt)

    # Return as downloadable PDF
    filename = f"{receipt['receipt_number']}.pdf"
    return StreamingResponse(
        pdf_buffer,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
        },
    )
