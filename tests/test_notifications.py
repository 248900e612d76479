from services.notifications import service


def test_check_stock_levels_alerts_once_per_material(client, admin_headers, factory):
    factory.material("Ball bearing", stock=4, minimum=10)
    factory.material("Gasket", stock=10, minimum=10)
    factory.material("Copper wire", stock=500, minimum=50)

    resp = client.post("/notifications/check-stock-levels", headers=admin_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["created"] == 2
    assert {n["priority"] for n in body["notifications"]} == {"high"}
    assert "Ball bearing" in body["notifications"][0]["message"]

    again = client.post("/notifications/check-stock-levels", headers=admin_headers).json()
    assert again["created"] == 0

    client.put("/notifications/read-all", headers=admin_headers)
    third = client.post("/notifications/check-stock-levels", headers=admin_headers).json()
    assert third["created"] == 2


def test_inbox_ordering_and_filters(client, admin_headers, db):
    service.emit(db, title="FYI", message="low", module="sales", type="info", priority="low")
    service.emit(db, title="Heads up", message="normal", module="sales", type="info")
    service.emit(db, title="Line down", message="high", module="manufacturing", type="alert", priority="high")

    inbox = client.get("/notifications", headers=admin_headers).json()
    assert [n["priority"] for n in inbox] == ["high", "normal", "low"]

    sales_only = client.get("/notifications", params={"module": "sales"}, headers=admin_headers).json()
    assert {n["module"] for n in sales_only} == {"sales"}
    assert len(sales_only) == 2

    assert client.get("/notifications/unread-count", headers=admin_headers).json() == {"count": 3}


def test_read_and_delete(client, admin_headers, db):
    n = service.emit(db, title="Batch done", message="B-1 finished", module="manufacturing", type="batch_completed")

    resp = client.put(f"/notifications/{n.id}/read", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "read"
    assert client.get("/notifications/unread-count", headers=admin_headers).json() == {"count": 0}

    assert client.delete(f"/notifications/{n.id}", headers=admin_headers).status_code == 200
    assert client.put(f"/notifications/{n.id}/read", headers=admin_headers).status_code == 404


def test_private_notifications_stay_private(client, admin_headers, make_user, db):
    headers, user_id = make_user("operator@acme-pumps.com")
    mine = service.emit(db, title="Shift", message="Your shift moved", module="hr", type="info", user_id=user_id)
    service.emit(db, title="Plant", message="Plant closes early", module="system", type="info")

    admin_view = client.get("/notifications", headers=admin_headers).json()
    assert [n["title"] for n in admin_view] == ["Plant"]
    assert client.put(f"/notifications/{mine.id}/read", headers=admin_headers).status_code == 404

    own_view = client.get("/notifications", headers=headers).json()
    assert {n["title"] for n in own_view} == {"Shift", "Plant"}

    assert client.put("/notifications/read-all", headers=headers).json() == {"updated": 2}


def test_unknown_priority_falls_back_to_normal(db):
    n = service.emit(db, title="t", message="m", module="system", type="info", priority="urgent")
    assert n.priority == "normal"


def test_stock_check_needs_inventory_access(client, make_user):
    headers, _ = make_user("desk@acme-pumps.com", "sales")
    assert client.post("/notifications/check-stock-levels", headers=headers).status_code == 403
    assert client.get("/notifications", headers=headers).status_code == 200
