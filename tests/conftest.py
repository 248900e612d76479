import os
import tempfile
from decimal import Decimal

_DB_DIR = tempfile.mkdtemp(prefix="factory-erp-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'factory.db')}"
os.environ["EVENT_DISPATCHER_ENABLED"] = "0"

import pytest
from fastapi.testclient import TestClient

from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.catalog import BOMLine, Product, SubComponent
from app.db.models.inventory import FinishedProduct, RawMaterial
from app.db.session import SessionLocal, engine
from main import app

PASSWORD = "s3cret-pass"


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client():
    with TestClient(app) as test_client:
        yield test_client


def _headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_headers(client):
    # The first account to register is bootstrapped as admin
    resp = client.post(
        "/auth/register",
        json={"email": "admin@acme-pumps.com", "password": PASSWORD, "full_name": "Plant Admin"},
    )
    assert resp.status_code == 200, resp.text
    return _headers(resp.json()["access_token"])


@pytest.fixture()
def make_user(client, admin_headers):
    """Register a user and give them the listed roles. Returns (headers, user_id)."""

    def _make(email: str, *roles: str):
        resp = client.post("/auth/register", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        headers = _headers(resp.json()["access_token"])
        user_id = client.get("/auth/me", headers=headers).json()["id"]
        if roles:
            resp = client.put(f"/auth/users/{user_id}/roles", json={"roles": list(roles)}, headers=admin_headers)
            assert resp.status_code == 200, resp.text
        return headers, user_id

    return _make


class Factory:
    """Writes catalog and stock rows straight to the database."""

    def __init__(self, session):
        self.db = session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def material(self, name="Steel sheet", *, stock=100, minimum=10, unit_price=5, uom="KG") -> RawMaterial:
        m = RawMaterial(
            material_code=f"RM-{self._next():03d}",
            name=name,
            uom=uom,
            current_stock=Decimal(str(stock)),
            minimum_stock=Decimal(str(minimum)),
            unit_price=Decimal(str(unit_price)),
            meta={},
        )
        self.db.add(m)
        self.db.commit()
        self.db.refresh(m)
        return m

    def product(self, name="Centrifugal pump", *, unit_price=1000, bom=(), stages=None, sub_components=()) -> Product:
        p = Product(
            product_code=f"PRD-{self._next():03d}",
            name=name,
            unit_price=Decimal(str(unit_price)),
            stages=list(stages or []),
            meta={},
        )
        p.sub_components = [
            SubComponent(name=sc_name, sequence=i, stages=list(sc_stages))
            for i, (sc_name, sc_stages) in enumerate(sub_components)
        ]
        p.bom_lines = [BOMLine(material_id=m.id, quantity_required=Decimal(str(q)), uom=m.uom) for m, q in bom]
        self.db.add(p)
        self.db.commit()
        self.db.refresh(p)
        return p

    def finished(self, product: Product, qty) -> FinishedProduct:
        f = FinishedProduct(product_id=product.id, quantity_available=Decimal(str(qty)), unit_price=product.unit_price)
        self.db.add(f)
        self.db.commit()
        self.db.refresh(f)
        return f

    def raw_stock(self, material: RawMaterial) -> Decimal:
        self.db.expire_all()
        return self.db.get(RawMaterial, material.id).current_stock

    def finished_stock(self, product: Product) -> Decimal:
        self.db.expire_all()
        row = self.db.query(FinishedProduct).filter(FinishedProduct.product_id == product.id).first()
        return row.quantity_available if row else Decimal("0")


@pytest.fixture()
def factory(db):
    return Factory(db)
