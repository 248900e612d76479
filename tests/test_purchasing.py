from datetime import date
from decimal import Decimal

from app.events.outbox import OutboxEvent


def _place(client, headers, material, quantity=40, **extra):
    payload = {
        "supplier_name": "Bharat Castings",
        "items": [{"material_id": material.id, "quantity": quantity, "unit_price": 12.5}],
        **extra,
    }
    resp = client.post("/purchasing/orders", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_place_order_creates_supplier_and_number(client, admin_headers, factory):
    iron = factory.material("Cast iron", stock=5)
    po = _place(client, admin_headers, iron)
    assert po["status"] == "ordered"
    assert po["po_number"] == f"PO-{date.today():%Y%m}-0001"
    assert po["total_amount"] == 500.0
    assert po["supplier_name"] == "Bharat Castings"

    again = _place(client, admin_headers, iron, quantity=1)
    assert again["supplier_id"] == po["supplier_id"]
    suppliers = client.get("/purchasing/suppliers", headers=admin_headers).json()
    assert [s["name"] for s in suppliers] == ["Bharat Castings"]


def test_arrival_adds_stock_exactly_once(client, admin_headers, db, factory):
    iron = factory.material("Cast iron", stock=5)
    po = _place(client, admin_headers, iron)

    resp = client.patch(f"/purchasing/orders/{po['id']}/status", json={"status": "arrived"}, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "arrived"
    assert resp.json()["received_at"] is not None
    assert factory.raw_stock(iron) == Decimal("45")

    resp = client.patch(f"/purchasing/orders/{po['id']}/status", json={"status": "arrived"}, headers=admin_headers)
    assert resp.status_code == 409
    assert factory.raw_stock(iron) == Decimal("45")

    [evt] = db.query(OutboxEvent).filter(OutboxEvent.topic == "purchasing.order.arrived").all()
    assert evt.payload["lines"] == [{"material_id": iron.id, "quantity": 40.0}]


def test_cancelled_order_never_arrives(client, admin_headers, factory):
    iron = factory.material("Cast iron", stock=5)
    po = _place(client, admin_headers, iron)
    resp = client.patch(f"/purchasing/orders/{po['id']}/status", json={"status": "cancelled"}, headers=admin_headers)
    assert resp.json()["status"] == "cancelled"

    resp = client.patch(f"/purchasing/orders/{po['id']}/status", json={"status": "arrived"}, headers=admin_headers)
    assert resp.status_code == 409
    assert factory.raw_stock(iron) == Decimal("5")


def test_order_validation(client, admin_headers, factory):
    iron = factory.material("Cast iron")
    resp = client.post("/purchasing/orders", json={"supplier_name": "X", "items": []}, headers=admin_headers)
    assert resp.status_code == 400

    resp = client.post(
        "/purchasing/orders",
        json={"items": [{"material_id": iron.id, "quantity": 1}]},
        headers=admin_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["details"]["field"] == "supplier_id"

    resp = client.post(
        "/purchasing/orders",
        json={"supplier_name": "X", "items": [{"material_id": "nope", "quantity": 1}]},
        headers=admin_headers,
    )
    assert resp.status_code == 404


def test_supplier_crud(client, admin_headers, factory):
    resp = client.post(
        "/purchasing/suppliers",
        json={"name": "Kirloskar Motors", "contact_person": "R. Iyer", "email": "sales@kirloskar.example"},
        headers=admin_headers,
    )
    assert resp.status_code == 201
    supplier = resp.json()

    dup = client.post("/purchasing/suppliers", json={"name": "Kirloskar Motors"}, headers=admin_headers)
    assert dup.status_code == 409

    resp = client.put(f"/purchasing/suppliers/{supplier['id']}", json={"phone": "+91 20 1234"}, headers=admin_headers)
    assert resp.json()["phone"] == "+91 20 1234"

    iron = factory.material("Cast iron")
    _place(client, admin_headers, iron, supplier_id=supplier["id"], supplier_name=None)
    assert client.delete(f"/purchasing/suppliers/{supplier['id']}", headers=admin_headers).status_code == 409


def test_store_role_cannot_place_orders(client, make_user, factory):
    iron = factory.material("Cast iron")
    store_headers, _ = make_user("stores@acme-pumps.com", "store")
    resp = client.post(
        "/purchasing/orders",
        json={"supplier_name": "X", "items": [{"material_id": iron.id, "quantity": 1}]},
        headers=store_headers,
    )
    assert resp.status_code == 403
    assert client.get("/purchasing/orders", headers=store_headers).status_code == 200


def _receive(client, headers, po_id, *items, path="grns"):
    return client.post(f"/purchasing/orders/{po_id}/{path}", json={"items": list(items)}, headers=headers)


def _pending(client, headers, po_id):
    return client.get(f"/purchasing/orders/{po_id}/pending-quantities", headers=headers).json()


def test_partial_receipts_add_stock_as_they_arrive(client, admin_headers, db, factory):
    iron = factory.material("Cast iron", stock=5)
    po = _place(client, admin_headers, iron, quantity=40)

    resp = _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 15})
    assert resp.status_code == 201, resp.text
    grn = resp.json()
    assert grn["grn_number"] == f"GRN-{date.today():%Y%m}-0001"
    assert grn["items"][0]["accepted_quantity"] == 15.0
    assert factory.raw_stock(iron) == Decimal("20")

    pending = _pending(client, admin_headers, po["id"])
    assert pending["status"] == "partially_received"
    assert pending["total_pending"] == 25.0
    assert pending["lines"][0]["accepted"] == 15.0

    # Cannot be forced by hand
    resp = client.patch(f"/purchasing/orders/{po['id']}/status", json={"status": "partially_received"}, headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "status_requires_receipt"

    _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 25})
    assert factory.raw_stock(iron) == Decimal("45")
    fetched = client.get(f"/purchasing/orders/{po['id']}", headers=admin_headers).json()
    assert fetched["status"] == "arrived"
    assert fetched["received_at"] is not None
    assert db.query(OutboxEvent).filter(OutboxEvent.topic == "purchasing.order.arrived").count() == 1
    assert db.query(OutboxEvent).filter(OutboxEvent.topic == "purchasing.grn.received").count() == 2

    resp = _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 1})
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"


def test_over_receipt_is_refused_without_touching_stock(client, admin_headers, factory):
    iron = factory.material("Cast iron", stock=5)
    po = _place(client, admin_headers, iron, quantity=40)
    _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 30})

    resp = _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 11})
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "over_receipt"
    assert body["details"]["pending"] == 10.0
    assert factory.raw_stock(iron) == Decimal("35")
    assert len(client.get(f"/purchasing/orders/{po['id']}/grns", headers=admin_headers).json()) == 1


def test_receipt_validation(client, admin_headers, factory):
    iron = factory.material("Cast iron", stock=5)
    copper = factory.material("Copper wire", stock=5)
    po = _place(client, admin_headers, iron)

    resp = _receive(client, admin_headers, po["id"], {"material_id": copper.id, "received_quantity": 1})
    assert resp.status_code == 400
    assert resp.json()["details"]["field"] == "material_id"

    resp = _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 2, "defective_quantity": 3})
    assert resp.status_code == 400
    assert resp.json()["details"]["field"] == "defective_quantity"

    assert _receive(client, admin_headers, po["id"]).status_code == 400
    assert factory.raw_stock(iron) == Decimal("5")


def test_defective_goods_stay_pending_until_replaced(client, admin_headers, factory):
    iron = factory.material("Cast iron", stock=0)
    po = _place(client, admin_headers, iron, quantity=20)

    _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 20, "defective_quantity": 4})
    assert factory.raw_stock(iron) == Decimal("16")
    [line] = _pending(client, admin_headers, po["id"])["lines"]
    assert (line["accepted"], line["defective"], line["pending"], line["awaiting_replacement"]) == (16.0, 4.0, 4.0, 4.0)

    resp = _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 5}, path="replacement-grns")
    assert resp.status_code == 409
    assert resp.json()["details"]["replaceable"] == 4.0

    resp = _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 4}, path="replacement-grns")
    assert resp.status_code == 201, resp.text
    assert resp.json()["is_replacement"] is True
    assert factory.raw_stock(iron) == Decimal("20")
    pending = _pending(client, admin_headers, po["id"])
    assert pending["status"] == "arrived"
    assert pending["lines"][0]["awaiting_replacement"] == 0.0


def test_manual_arrival_receives_only_what_is_pending(client, admin_headers, factory):
    iron = factory.material("Cast iron", stock=0)
    po = _place(client, admin_headers, iron, quantity=40)
    _receive(client, admin_headers, po["id"], {"material_id": iron.id, "received_quantity": 10})

    resp = client.patch(f"/purchasing/orders/{po['id']}/status", json={"status": "arrived"}, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "arrived"
    assert factory.raw_stock(iron) == Decimal("40")
    grns = client.get(f"/purchasing/orders/{po['id']}/grns", headers=admin_headers).json()
    assert [g["items"][0]["received_quantity"] for g in grns] == [10.0, 30.0]
