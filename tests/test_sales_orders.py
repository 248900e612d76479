from datetime import date
from decimal import Decimal

import pytest

from app.db.models.sales import SalesOrder
from app.events.outbox import OutboxEvent

STAGES = ["Inward", "QC", "Completed"]


@pytest.fixture()
def pump(factory):
    steel = factory.material("Steel sheet", stock=100)
    seal = factory.material("Mechanical seal", stock=10, uom="EA")
    product = factory.product("Monoblock pump", unit_price=1000, stages=STAGES, bom=[(steel, 5), (seal, 1)])
    return product, steel, seal


def _order(client, headers, product, quantity, **extra):
    payload = {"customer_name": "Shree Agro Farms", "items": [{"product_id": product.id, "quantity": quantity}], **extra}
    resp = client.post("/sales/orders", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _confirm(client, headers, order_id):
    return client.post(f"/sales/orders/{order_id}/confirm", headers=headers)


def test_create_order_computes_totals_and_number(client, admin_headers, pump):
    product, _, _ = pump
    order = _order(client, admin_headers, product, 2, discount=10, gst=18)
    assert order["status"] == "pending"
    assert order["subtotal"] == 2000.0
    # (2000 - 10%) + 18% GST
    assert order["total_amount"] == 2124.0
    assert order["items"][0]["unit_price"] == 1000.0
    assert order["order_number"] == f"SO-{date.today():%Y%m}-0001"

    second = _order(client, admin_headers, product, 1)
    assert second["order_number"].endswith("-0002")
    assert second["gst"] == 18.0


@pytest.mark.parametrize(
    "payload, status, field",
    [
        ({"customer_name": "Acme", "items": []}, 400, "items"),
        ({"customer_name": "  ", "items": [{"product_id": "PID", "quantity": 1}]}, 400, "customer_name"),
        ({"customer_name": "Acme", "items": [{"product_id": "PID", "quantity": 0}]}, 400, "quantity"),
        ({"customer_name": "Acme", "items": [{"product_id": "PID", "quantity": 1, "unit_price": 0}]}, 400, "unit_price"),
        ({"customer_name": "Acme", "items": [{"product_id": "PID", "quantity": 1}], "discount": 150}, 400, "discount"),
    ],
)
def test_create_order_validation(client, admin_headers, pump, payload, status, field):
    product, _, _ = pump
    for item in payload["items"]:
        item["product_id"] = product.id
    resp = client.post("/sales/orders", json=payload, headers=admin_headers)
    assert resp.status_code == status, resp.text
    assert resp.json()["error"] == "validation_error"
    assert resp.json()["details"]["field"] == field


def test_unknown_product_is_404(client, admin_headers):
    resp = client.post(
        "/sales/orders",
        json={"customer_name": "Acme", "items": [{"product_id": "missing", "quantity": 1}]},
        headers=admin_headers,
    )
    assert resp.status_code == 404


def test_confirm_fully_in_stock(client, admin_headers, db, factory, pump):
    product, steel, _ = pump
    factory.finished(product, 5)
    order = _order(client, admin_headers, product, 3)

    resp = _confirm(client, admin_headers, order["id"])
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "confirmed"
    [pf] = body["fulfillments"]
    assert (pf["in_stock_quantity"], pf["manufacturing_quantity"]) == (3.0, 0.0)
    assert pf["batch_ids"] == []
    assert factory.finished_stock(product) == Decimal("2")
    assert factory.raw_stock(steel) == Decimal("100")
    assert client.get(f"/sales/orders/{order['id']}/batches", headers=admin_headers).json() == []
    assert db.query(OutboxEvent).filter(OutboxEvent.topic == "sales.order.confirmed").count() == 1


def test_partial_stock_builds_the_rest_and_settles_on_completion(client, admin_headers, factory, pump):
    product, steel, seal = pump
    factory.finished(product, 2)
    order = _order(client, admin_headers, product, 5)

    body = _confirm(client, admin_headers, order["id"]).json()
    assert body["status"] == "partially_in_stock"
    [pf] = body["fulfillments"]
    assert pf["in_stock_quantity"] == 2.0
    assert pf["manufacturing_quantity"] == 3.0
    [batch_id] = pf["batch_ids"]
    assert factory.finished_stock(product) == 0

    batch = client.get(f"/manufacturing/batches/{batch_id}", headers=admin_headers).json()
    assert batch["quantity"] == 3.0
    assert batch["sales_order_id"] == order["id"]

    # Nothing left in stock to close it out yet
    resp = _confirm(client, admin_headers, order["id"])
    assert resp.status_code == 409
    assert resp.json()["error"] == "manufacturing_pending"

    client.patch(f"/manufacturing/batches/{batch_id}/stage", json={"stage": "QC"}, headers=admin_headers)
    assert factory.raw_stock(steel) == Decimal("85")
    assert factory.raw_stock(seal) == Decimal("7")
    client.patch(f"/manufacturing/batches/{batch_id}/stage", json={"stage": "Completed"}, headers=admin_headers)

    settled = client.get(f"/sales/orders/{order['id']}", headers=admin_headers).json()
    assert settled["status"] == "confirmed"
    [pf] = settled["fulfillments"]
    assert (pf["in_stock_quantity"], pf["manufacturing_quantity"]) == (5.0, 0.0)
    assert factory.finished_stock(product) == Decimal("3")

    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "delivered"
    assert factory.finished_stock(product) == 0

    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": "completed"}, headers=admin_headers)
    assert resp.json()["status"] == "completed"


def test_infeasible_order_waits_for_materials(client, admin_headers, factory):
    steel = factory.material("Steel sheet", stock=12)
    product = factory.product("Pump", stages=STAGES, bom=[(steel, 5)])
    order = _order(client, admin_headers, product, 3)

    body = _confirm(client, admin_headers, order["id"]).json()
    assert body["status"] == "awaiting_materials"
    [pf] = body["fulfillments"]
    assert pf["manufacturing_quantity"] == 3.0
    assert pf["batch_ids"] == []
    assert factory.raw_stock(steel) == Decimal("12")
    assert client.get(f"/sales/orders/{order['id']}/batches", headers=admin_headers).json() == []
    shortage = client.get("/notifications", params={"type": "material_shortage"}, headers=admin_headers).json()
    assert len(shortage) == 1
    assert order["order_number"] in shortage[0]["message"]

    po = client.post(
        "/purchasing/orders",
        json={"supplier_name": "Tata Steel Depot", "items": [{"material_id": steel.id, "quantity": 10, "unit_price": 60}]},
        headers=admin_headers,
    ).json()
    client.patch(f"/purchasing/orders/{po['id']}/status", json={"status": "arrived"}, headers=admin_headers)
    assert factory.raw_stock(steel) == Decimal("22")

    body = _confirm(client, admin_headers, order["id"]).json()
    assert body["status"] == "partially_in_stock"
    assert len(body["fulfillments"]) == 1
    assert len(body["fulfillments"][0]["batch_ids"]) == 1


def test_cancel_returns_reserved_stock(client, admin_headers, factory, pump):
    product, _, _ = pump
    factory.finished(product, 5)
    order = _order(client, admin_headers, product, 3)
    _confirm(client, admin_headers, order["id"])
    assert factory.finished_stock(product) == Decimal("2")

    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": "cancelled"}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert factory.finished_stock(product) == Decimal("5")


def test_batch_for_cancelled_order_still_lands_in_stock(client, admin_headers, factory, pump):
    product, _, _ = pump
    order = _order(client, admin_headers, product, 2)
    [batch_id] = _confirm(client, admin_headers, order["id"]).json()["fulfillments"][0]["batch_ids"]
    client.patch(f"/sales/orders/{order['id']}/status", json={"status": "cancelled"}, headers=admin_headers)

    resp = client.patch(f"/manufacturing/batches/{batch_id}/stage", json={"stage": "Completed"}, headers=admin_headers)
    assert resp.status_code == 200
    assert factory.finished_stock(product) == Decimal("2")
    assert client.get(f"/sales/orders/{order['id']}", headers=admin_headers).json()["status"] == "cancelled"


def test_start_production_builds_everything(client, admin_headers, factory, pump):
    product, _, _ = pump
    factory.finished(product, 10)
    order = _order(client, admin_headers, product, 4)

    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": "in_production"}, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "in_production"
    [pf] = body["fulfillments"]
    assert pf["manufacturing_quantity"] == 4.0
    assert factory.finished_stock(product) == Decimal("10")


def test_only_pending_orders_can_be_edited(client, admin_headers, factory, pump):
    product, _, _ = pump
    factory.finished(product, 10)
    order = _order(client, admin_headers, product, 2)

    resp = client.put(
        f"/sales/orders/{order['id']}",
        json={"items": [{"product_id": product.id, "quantity": 3}], "discount": 0},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["subtotal"] == 3000.0
    assert resp.json()["total_amount"] == 3540.0

    _confirm(client, admin_headers, order["id"])
    resp = client.put(f"/sales/orders/{order['id']}", json={"notes": "late change"}, headers=admin_headers)
    assert resp.status_code == 409


def test_delete_rules(client, admin_headers, pump):
    product, _, _ = pump
    draft = _order(client, admin_headers, product, 1)
    assert client.delete(f"/sales/orders/{draft['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/sales/orders/{draft['id']}", headers=admin_headers).status_code == 404

    built = _order(client, admin_headers, product, 1)
    _confirm(client, admin_headers, built["id"])
    resp = client.delete(f"/sales/orders/{built['id']}", headers=admin_headers)
    assert resp.status_code == 409


def test_status_changes_follow_the_order_flow(client, admin_headers, pump):
    product, _, _ = pump
    order = _order(client, admin_headers, product, 1)

    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"

    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": "shipped"}, headers=admin_headers)
    assert resp.status_code == 400

    assert client.get("/sales/orders", params={"status": "pending"}, headers=admin_headers).json()[0]["id"] == order["id"]


@pytest.mark.parametrize("status", ["partially_in_stock", "awaiting_materials"])
def test_resolver_outcomes_cannot_be_set_by_hand(client, admin_headers, factory, pump, status):
    product, _, _ = pump
    factory.finished(product, 10)
    order = _order(client, admin_headers, product, 4)

    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": status}, headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "status_requires_confirmation"
    assert client.get(f"/sales/orders/{order['id']}", headers=admin_headers).json()["status"] == "pending"

    assert _confirm(client, admin_headers, order["id"]).json()["status"] == "confirmed"
    resp = client.patch(f"/sales/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin_headers)
    assert resp.json()["status"] == "delivered"
    assert factory.finished_stock(product) == Decimal("6")


def test_split_order_without_fulfillments_goes_through_the_resolver(client, admin_headers, db, factory, pump):
    product, _, _ = pump
    factory.finished(product, 10)
    order = _order(client, admin_headers, product, 4)
    row = db.get(SalesOrder, order["id"])
    row.status = "partially_in_stock"
    db.commit()

    body = _confirm(client, admin_headers, order["id"]).json()
    assert body["status"] == "confirmed"
    assert factory.finished_stock(product) == Decimal("6")


def test_sales_desk_can_take_orders_but_not_run_production(client, make_user, factory, pump):
    product, _, _ = pump
    factory.finished(product, 5)
    sales_headers, _ = make_user("desk@acme-pumps.com", "sales")

    order = _order(client, sales_headers, product, 1)
    assert _confirm(client, sales_headers, order["id"]).status_code == 200

    resp = client.post("/manufacturing/batches", json={"product_id": product.id, "quantity": 1}, headers=sales_headers)
    assert resp.status_code == 403
