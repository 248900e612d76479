import asyncio
import json

import httpx
import pytest

from app.db.session import SessionLocal
from app.events import bus
from app.events.dispatcher import _pattern_matches, dispatch_pending
from app.events.outbox import OutboxEvent
from app.events.subscriptions import EventSubscription


@pytest.mark.parametrize(
    "pattern, topic, expected",
    [
        ("manufacturing.batch.completed", "manufacturing.batch.completed", True),
        ("manufacturing.", "manufacturing.stage.advanced", True),
        ("manufacturing.*", "manufacturing.batch.created", True),
        ("manufacturing.*", "sales.order.confirmed", False),
        ("manufacturing", "manufacturing.batch.created", False),
        ("", "anything", False),
    ],
)
def test_pattern_matching(pattern, topic, expected):
    assert _pattern_matches(pattern, topic) is expected


def _subscribe(db, pattern, url="https://hooks.acme-pumps.com/erp"):
    sub = EventSubscription(name="plant-dashboard", topic_pattern=pattern, target_url=url, headers={"X-Token": "abc"})
    db.add(sub)
    db.commit()
    return sub


def _run(handler):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await dispatch_pending(client, session_factory=SessionLocal)

    return asyncio.run(go())


def test_matching_event_is_delivered(db):
    _subscribe(db, "manufacturing.*")
    bus.publish(db, "manufacturing.batch.completed", {"batch_number": "B-1", "quantity": 3.0})
    db.commit()

    received = []

    def handler(request):
        received.append((request.headers.get("X-Token"), json.loads(request.content)))
        return httpx.Response(204)

    assert _run(handler) == 1
    [(token, body)] = received
    assert token == "abc"
    assert body["topic"] == "manufacturing.batch.completed"
    assert body["payload"] == {"batch_number": "B-1", "quantity": 3.0}

    db.expire_all()
    evt = db.query(OutboxEvent).one()
    assert evt.delivered is True
    assert db.query(EventSubscription).one().last_delivered_at is not None


def test_failed_delivery_is_retried_later(db):
    _subscribe(db, "sales.")
    bus.publish(db, "sales.order.confirmed", {"order_number": "SO-1"})
    db.commit()

    assert _run(lambda request: httpx.Response(500, text="boom")) == 1

    db.expire_all()
    evt = db.query(OutboxEvent).one()
    assert evt.delivered is False
    assert evt.attempt_count == 1
    assert evt.last_error.startswith("HTTP 500")
    assert db.query(EventSubscription).one().failure_count == 1

    # Backed off, so not due yet
    assert _run(lambda request: httpx.Response(200)) == 0


def test_unsubscribed_topics_are_marked_delivered(db):
    bus.publish(db, "purchasing.order.arrived", {"po_number": "PO-1"})
    db.commit()

    def handler(request):
        raise AssertionError("no subscriber should be called")

    assert _run(handler) == 1
    db.expire_all()
    assert db.query(OutboxEvent).one().delivered is True


def test_rolled_back_publish_leaves_no_event(db):
    bus.publish(db, "manufacturing.batch.created", {"batch_number": "B-2"})
    db.rollback()
    assert db.query(OutboxEvent).count() == 0


def test_subscription_admin_endpoints(client, admin_headers, make_user):
    resp = client.post(
        "/admin/events/subscriptions",
        json={"name": "mes", "topic_pattern": "manufacturing.*", "target_url": "https://mes.acme-pumps.com/hook"},
        headers=admin_headers,
    )
    assert resp.status_code == 201
    sub_id = resp.json()["id"]

    bad = client.post(
        "/admin/events/subscriptions",
        json={"topic_pattern": "sales.*", "target_url": "ftp://nope"},
        headers=admin_headers,
    )
    assert bad.status_code == 422

    resp = client.post(f"/admin/events/subscriptions/{sub_id}/toggle", json={}, headers=admin_headers)
    assert resp.json()["is_active"] is False

    resp = client.post("/admin/events/publish", json={"topic": "manual.test", "payload": {"x": 1}}, headers=admin_headers)
    assert resp.status_code == 200
    outbox = client.get("/admin/events/outbox", params={"pending_only": True}, headers=admin_headers).json()
    assert [e["topic"] for e in outbox] == ["manual.test"]

    headers, _ = make_user("clerk@acme-pumps.com", "sales")
    assert client.get("/admin/events/subscriptions", headers=headers).status_code == 403


def test_order_confirmation_reaches_a_sales_subscriber(client, admin_headers, db, factory):
    product = factory.product("Monoblock pump", stages=["Inward", "QC", "Completed"])
    factory.finished(product, 5)
    _subscribe(db, "sales.order.*", url="https://crm.acme-pumps.com/hooks/orders")
    order = client.post(
        "/sales/orders",
        json={"customer_name": "Shree Agro Farms", "items": [{"product_id": product.id, "quantity": 2}]},
        headers=admin_headers,
    ).json()
    assert client.post(f"/sales/orders/{order['id']}/confirm", headers=admin_headers).status_code == 200

    received = []

    def handler(request):
        received.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200)

    assert _run(handler) == 1
    [(url, body)] = received
    assert url == "https://crm.acme-pumps.com/hooks/orders"
    assert body["topic"] == "sales.order.confirmed"
    assert body["payload"]["order_number"] == order["order_number"]
    assert body["payload"]["status"] == "confirmed"
