def test_raw_material_crud_and_low_stock(client, admin_headers):
    resp = client.post(
        "/inventory/raw-materials",
        json={"material_code": "RM-BRG", "name": "Ball bearing", "uom": "EA", "current_stock": 8, "minimum_stock": 10},
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    bearing = resp.json()
    assert bearing["is_low"] is True

    client.post(
        "/inventory/raw-materials",
        json={"material_code": "RM-CU", "name": "Copper wire", "current_stock": 500, "minimum_stock": 50},
        headers=admin_headers,
    )
    low = client.get("/inventory/raw-materials/low-stock", headers=admin_headers).json()
    assert [m["material_code"] for m in low] == ["RM-BRG"]

    dup = client.post("/inventory/raw-materials", json={"material_code": "RM-BRG", "name": "Again"}, headers=admin_headers)
    assert dup.status_code == 409
    assert dup.json()["error"] == "duplicate_material_code"

    negative = client.put(f"/inventory/raw-materials/{bearing['id']}", json={"current_stock": -1}, headers=admin_headers)
    assert negative.status_code == 400

    resp = client.put(f"/inventory/raw-materials/{bearing['id']}", json={"current_stock": 30}, headers=admin_headers)
    assert resp.json()["is_low"] is False
    assert client.get("/inventory/raw-materials/low-stock", headers=admin_headers).json() == []


def test_material_used_by_bom_cannot_be_deleted(client, admin_headers, factory):
    steel = factory.material("Steel sheet")
    spare = factory.material("Gasket")
    factory.product("Pump", bom=[(steel, 2)])
    assert client.delete(f"/inventory/raw-materials/{steel.id}", headers=admin_headers).status_code == 409
    assert client.delete(f"/inventory/raw-materials/{spare.id}", headers=admin_headers).status_code == 200


def test_finished_goods_adjustment_never_goes_negative(client, admin_headers, factory):
    product = factory.product("Pump")
    resp = client.post(
        "/inventory/finished-products",
        json={"product_id": product.id, "quantity_available": 3, "storage_location": "FG-A1"},
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    fg = resp.json()
    assert fg["unit_price"] == 1000.0

    resp = client.patch(f"/inventory/finished-products/{fg['id']}/quantity", json={"delta": -2}, headers=admin_headers)
    assert resp.json()["quantity_available"] == 1.0

    resp = client.patch(f"/inventory/finished-products/{fg['id']}/quantity", json={"delta": -5}, headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "insufficient_stock"

    resp = client.patch(f"/inventory/finished-products/{fg['id']}/quantity", json={"delta": 4}, headers=admin_headers)
    assert resp.json()["quantity_available"] == 5.0

    dup = client.post("/inventory/finished-products", json={"product_id": product.id}, headers=admin_headers)
    assert dup.status_code == 409


def test_product_with_sub_components_and_bom(client, admin_headers, factory):
    copper = factory.material("Copper wire")
    iron = factory.material("Cast iron")
    resp = client.post(
        "/catalog/products",
        json={
            "product_code": "PMP-5HP",
            "name": "5 HP submersible pump",
            "unit_price": 18500,
            "sub_components": [
                {"name": "Motor", "stages": ["Winding", "Motor QC"]},
                {"name": "Pump body", "stages": ["Casting", "Machining"]},
            ],
            "bom": [
                {"material_id": copper.id, "quantity_required": 3.5, "uom": "KG", "sub_component": "Motor"},
                {"material_id": iron.id, "quantity_required": 12, "uom": "KG", "sub_component": "Pump body"},
            ],
        },
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    product = resp.json()
    assert product["stages"] == []
    assert product["effective_stages"] == [
        "Winding",
        "Motor QC",
        "Casting",
        "Machining",
        "Final Assembly",
        "Testing",
        "Packaging",
        "Completed",
    ]
    assert len(product["bom"]) == 2

    batch = client.post(
        "/manufacturing/batches", json={"product_id": product["id"], "quantity": 1}, headers=admin_headers
    ).json()
    steps = {s["step_name"]: s["sub_component_id"] for s in batch["workflow_steps"]}
    motor_id = next(sc["id"] for sc in product["sub_components"] if sc["name"] == "Motor")
    assert steps["Winding"] == motor_id
    assert steps["Testing"] is None

    assert client.delete(f"/catalog/products/{product['id']}", headers=admin_headers).status_code == 409


def test_product_validation(client, admin_headers, factory):
    resp = client.post("/catalog/products", json={"name": "No code"}, headers=admin_headers)
    assert resp.status_code == 400

    resp = client.post(
        "/catalog/products",
        json={"product_code": "X-1", "name": "X", "bom": [{"material_id": "missing", "quantity_required": 1}]},
        headers=admin_headers,
    )
    assert resp.status_code == 404

    resp = client.post(
        "/catalog/products",
        json={"product_code": "X-2", "name": "X", "stages": "Inward"},
        headers=admin_headers,
    )
    assert resp.status_code == 400


def test_reads_need_a_login(client, factory):
    factory.product("Pump")
    assert client.get("/catalog/products").status_code == 401
    assert client.get("/inventory/raw-materials").status_code == 401
