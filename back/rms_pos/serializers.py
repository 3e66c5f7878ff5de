"""
Response shapes.

Every successful response is wrapped in the same envelope:
{"success": true, "message", "data", "timestamp"[, "meta"]}.
Money leaves the API as decimal amounts with 2 places.
"""

from datetime import datetime, timezone
from typing import Any

from .billing import PaymentResult
from .models import KOT, Bill, KOTItem, Order, OrderItem, Payment, Table, as_utc
from .pricing import cents_to_float
from .splitting import SplitFragment
from .tables import MergeResult


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def api_response(data: Any = None, message: str = "Success", meta: dict | None = None) -> dict:
    response = {
        "success": True,
        "message": message,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if meta is not None:
        response["meta"] = meta
    return response


def order_item_to_dict(item: OrderItem) -> dict:
    return {
        "id": item.id,
        "menu_item_id": item.menu_item_id,
        "name": item.name,
        "quantity": item.quantity,
        "unit_price": float(item.unit_price),
        "total_price": cents_to_float(item.total_price_cents),
        "special_instructions": item.special_instructions,
        "status": item.status.value,
    }


def order_to_dict(order: Order, items: list[OrderItem] | None = None) -> dict:
    data = {
        "id": order.id,
        "tenant_id": order.tenant_id,
        "outlet_id": order.outlet_id,
        "order_number": order.order_number,
        "table_id": order.table_id,
        "customer_id": order.customer_id,
        "order_type": order.order_type.value,
        "subtotal": cents_to_float(order.subtotal_cents),
        "tax": cents_to_float(order.tax_cents),
        "total": cents_to_float(order.total_cents),
        "tax_rate": float(order.tax_rate) if order.tax_rate is not None else None,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "payment_method": order.payment_method,
        "invoice_number": order.invoice_number,
        "customer_info": order.customer_info,
        "merged_into_order_id": order.merged_into_order_id,
        "notes": order.notes,
        "paid_at": _iso(order.paid_at),
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if items is not None:
        data["items"] = [order_item_to_dict(item) for item in items]
    return data


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "method": payment.method.value,
        "amount": cents_to_float(payment.amount_cents),
        "reference": payment.reference,
        "card_last4": payment.card_last4,
        "approval_code": payment.approval_code,
        "processed_at": _iso(payment.processed_at),
    }


def bill_to_dict(bill: Bill, children: list[Bill] | None = None) -> dict:
    data = {
        "id": bill.id,
        "outlet_id": bill.outlet_id,
        "order_id": bill.order_id,
        "bill_number": bill.bill_number,
        "parent_bill_id": bill.parent_bill_id,
        "split_number": bill.split_number,
        "split_type": bill.split_type.value if bill.split_type else None,
        "item_ids": bill.item_ids,
        "subtotal": cents_to_float(bill.subtotal_cents),
        "discounts": [
            {
                "name": d["name"],
                "type": d["type"],
                "value": float(d["value"]),
                "amount": cents_to_float(d["amount_cents"]),
            }
            for d in bill.discounts
        ],
        "discount": cents_to_float(bill.discount_cents),
        "service_charge_percent": float(bill.service_charge_percent),
        "service_charge": cents_to_float(bill.service_charge_cents),
        "taxes": [
            {"name": t["name"], "rate": float(t["rate"]), "amount": cents_to_float(t["amount_cents"])}
            for t in bill.taxes
        ],
        "tax": cents_to_float(bill.tax_cents),
        "total": cents_to_float(bill.total_cents),
        "status": bill.status.value,
        "invoice_number": bill.invoice_number,
        "customer_info": bill.customer_info,
        "notes": bill.notes,
        "paid_at": _iso(bill.paid_at),
        "created_at": _iso(bill.created_at),
    }
    if children is not None:
        data["splits"] = [bill_to_dict(child) for child in children]
    return data


def payment_result_to_dict(result: PaymentResult) -> dict:
    data = {
        "order": order_to_dict(result.order),
        "invoice": {
            "invoice_number": result.invoice_number,
            "amount": cents_to_float(result.amount_cents),
            "issued_at": _iso(result.paid_at),
            "payments": [payment_to_dict(p) for p in result.payments],
        },
    }
    if result.bill is not None:
        data["bill"] = bill_to_dict(result.bill)
    if result.parent_bill is not None:
        data["parent_bill"] = bill_to_dict(result.parent_bill)
    return data


def split_fragment_to_dict(fragment: SplitFragment) -> dict:
    data = {
        "split_number": fragment.split_number,
        "amount": cents_to_float(fragment.amount_cents),
        "description": fragment.description,
    }
    if fragment.item_ids is not None:
        data["item_ids"] = fragment.item_ids
    if fragment.subtotal_cents is not None:
        data["subtotal"] = cents_to_float(fragment.subtotal_cents)
    if fragment.tax_cents is not None:
        data["tax"] = cents_to_float(fragment.tax_cents)
    return data


def kot_item_to_dict(item: KOTItem) -> dict:
    return {
        "id": item.id,
        "order_item_id": item.order_item_id,
        "menu_item_id": item.menu_item_id,
        "name": item.name,
        "quantity": item.quantity,
        "special_instructions": item.special_instructions,
        "status": item.status.value,
        "started_at": _iso(item.started_at),
        "completed_at": _iso(item.completed_at),
    }


def kot_to_dict(kot: KOT, items: list[KOTItem] | None = None) -> dict:
    return {
        "id": kot.id,
        "outlet_id": kot.outlet_id,
        "kot_number": kot.kot_number,
        "order_id": kot.order_id,
        "order_number": kot.order_number,
        "table_id": kot.table_id,
        "order_type": kot.order_type.value,
        "priority": kot.priority.value,
        "status": kot.status.value,
        "notes": kot.notes,
        "items": [kot_item_to_dict(item) for item in (kot.items if items is None else items)],
        "estimated_completion_time": _iso(kot.estimated_completion_time),
        "actual_completion_time": _iso(kot.actual_completion_time),
        "started_at": _iso(kot.started_at),
        "assigned_to": kot.assigned_to,
        "assigned_at": _iso(kot.assigned_at),
        "created_at": _iso(kot.created_at),
        "updated_at": _iso(kot.updated_at),
    }


def table_to_dict(table: Table) -> dict:
    return {
        "id": table.id,
        "outlet_id": table.outlet_id,
        "table_number": table.table_number,
        "capacity": table.capacity,
        "section": table.section,
        "status": table.status.value,
        "is_active": table.is_active,
        "status_updated_at": _iso(table.status_updated_at),
        "created_at": _iso(table.created_at),
        "updated_at": _iso(table.updated_at),
    }


def merge_result_to_dict(result: MergeResult) -> dict:
    return {
        "merged_order": order_to_dict(result.merged_order, result.items),
        "original_orders": result.original_order_ids,
        "merged_tables": result.merged_tables,
        "primary_table": result.primary_table_id,
        "cancelled_bills": result.cancelled_bill_ids,
    }
