"""
HTTP surface: authentication, response envelopes and an end-to-end
order -> bill -> split -> payment -> receipt flow.
"""

from datetime import timedelta

from rms_pos.security import create_access_token

from conftest import OUTLET

ORDER_BODY = {
    "outlet_id": OUTLET,
    "order_type": "DINE_IN",
    "tax_rate": "0.18",
    "items": [
        {"menu_item_id": "m-curry", "menu_item_name": "Chicken Curry", "quantity": 2, "unit_price": "10.50"},
    ],
}


def _create_order(client, headers, **overrides):
    response = client.post("/orders/", json={**ORDER_BODY, **overrides}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_a_token_are_rejected(client):
    response = client.get("/orders/")
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "UNAUTHORIZED"


def test_expired_or_tenantless_tokens_are_rejected(client):
    expired = create_access_token({"tenant_id": "tenant-1"}, expires_delta=timedelta(minutes=-1))
    response = client.get("/orders/", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401

    tenantless = create_access_token({"sub": "staff-1"})
    response = client.get("/orders/", headers={"Authorization": f"Bearer {tenantless}"})
    assert response.status_code == 401
    assert response.json()["message"] == "Token carries no tenant"


def test_token_from_cookie(client, auth_headers):
    token = auth_headers["Authorization"].split(" ", 1)[1]
    client.cookies.set("access_token", token)
    assert client.get("/orders/").status_code == 200


def test_create_order_envelope(client, auth_headers):
    response = client.post("/orders/", json=ORDER_BODY, headers=auth_headers)
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Order created successfully"
    assert "timestamp" in body

    order = body["data"]
    assert (order["subtotal"], order["tax"], order["total"]) == (21.0, 3.78, 24.78)
    assert order["tenant_id"] == "tenant-1"
    assert order["items"][0]["name"] == "Chicken Curry"
    assert order["items"][0]["total_price"] == 21.0


def test_invalid_body_is_a_validation_error(client, auth_headers):
    response = client.post("/orders/", json={**ORDER_BODY, "items": "lots"}, headers=auth_headers)
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "VALIDATION_ERROR"
    assert body["message"] == "Validation failed"
    assert body["details"]


def test_business_rule_violation_is_a_validation_error(client, auth_headers):
    response = client.post("/orders/", json={**ORDER_BODY, "items": []}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_missing_resources_are_404(client, auth_headers):
    response = client.get("/orders/999", headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["error"] == "RESOURCE_NOT_FOUND"
    assert client.get("/bills/999", headers=auth_headers).status_code == 404
    assert client.get("/kots/999", headers=auth_headers).status_code == 404


def test_other_tenants_cannot_see_an_order(client, auth_headers):
    order = _create_order(client, auth_headers)
    other = {"Authorization": f"Bearer {create_access_token({'tenant_id': 'tenant-2'})}"}
    assert client.get(f"/orders/{order['id']}", headers=other).status_code == 404


def test_list_orders_meta(client, auth_headers):
    for _ in range(3):
        _create_order(client, auth_headers)
    body = client.get("/orders/", params={"limit": 2}, headers=auth_headers).json()
    assert len(body["data"]) == 2
    assert body["meta"]["total"] == 3
    assert body["meta"]["has_next"] is True


def test_order_split_preview(client, auth_headers):
    order = _create_order(client, auth_headers)
    response = client.post(
        f"/orders/{order['id']}/split",
        json={"split_type": "EQUAL", "number_of_people": 3},
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["total_splits"] == 3
    assert [s["amount"] for s in data["splits"]] == [8.26, 8.26, 8.26]


def test_bill_split_payment_and_receipt_flow(client, auth_headers):
    order = _create_order(client, auth_headers)

    response = client.post(
        "/bills/generate",
        json={"order_id": order["id"], "discounts": [{"name": "Promo", "type": "PERCENTAGE", "value": 10}]},
        headers=auth_headers,
    )
    assert response.status_code == 201, response.text
    bill = response.json()["data"]
    # 21.00 - 2.10 discount, 18% tax on 18.90 = 3.40
    assert (bill["discount"], bill["tax"], bill["total"]) == (2.1, 3.4, 22.3)

    response = client.post(f"/bills/{bill['id']}/split/equal", json={"number_of_people": 2}, headers=auth_headers)
    assert response.status_code == 200, response.text
    split = response.json()["data"]
    assert split["status"] == "SPLIT"
    assert [child["total"] for child in split["splits"]] == [11.15, 11.15]

    for child in split["splits"]:
        response = client.post(
            f"/bills/{child['id']}/payment",
            json={"payments": [{"method": "CASH", "amount": str(child["total"])}]},
            headers=auth_headers,
        )
        assert response.status_code == 200, response.text
    payment = response.json()["data"]
    assert payment["order"]["payment_status"] == "PAID"
    assert payment["order"]["payment_method"] == "SPLIT"
    assert payment["parent_bill"]["status"] == "PAID"

    receipt = client.get(f"/bills/{bill['id']}/receipt", headers=auth_headers).json()["data"]
    assert receipt["total"] == 22.3
    assert len(receipt["payments"]) == 2

    pdf = client.get(f"/bills/{bill['id']}/receipt/pdf", headers=auth_headers)
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")


def test_double_payment_is_rejected(client, auth_headers):
    order = _create_order(client, auth_headers)
    body = {"payments": [{"method": "CARD", "amount": "24.78", "card_last4": "4242"}]}
    first = client.post(f"/orders/{order['id']}/payment", json=body, headers=auth_headers)
    assert first.status_code == 200
    assert first.json()["data"]["invoice"]["invoice_number"].startswith("INV-")

    second = client.post(f"/orders/{order['id']}/payment", json=body, headers=auth_headers)
    assert second.status_code == 400
    assert "already been paid" in second.json()["message"]


def test_kot_and_table_endpoints(client, auth_headers):
    table = client.post(
        "/tables/", json={"outlet_id": OUTLET, "table_number": "T9", "capacity": 4}, headers=auth_headers
    ).json()["data"]
    order = _create_order(client, auth_headers, table_id=table["id"])

    table_now = client.get(f"/tables/{table['id']}", headers=auth_headers).json()["data"]
    assert table_now["status"] == "OCCUPIED"

    response = client.post(f"/orders/{order['id']}/kot", json={"priority": "HIGH"}, headers=auth_headers)
    assert response.status_code == 201, response.text
    kot = response.json()["data"]
    assert kot["priority"] == "HIGH"
    assert len(kot["items"]) == 1

    response = client.put(f"/kots/{kot['id']}/status", json={"status": "IN_PROGRESS"}, headers=auth_headers)
    assert response.status_code == 200, response.text

    display = client.get("/kots/kitchen/display", params={"outlet_id": OUTLET}, headers=auth_headers).json()
    assert [k["id"] for k in display["data"]] == [kot["id"]]

    stats = client.get(f"/kots/statistics/{OUTLET}", headers=auth_headers).json()["data"]
    assert stats["in_progress"] == 1
