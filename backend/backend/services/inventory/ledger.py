"""
Inventory ledger: the only writer of raw material and finished goods quantities.

Decrements are single conditional UPDATE statements so concurrent callers can
never drive stock below zero. Nothing here commits; callers own the
transaction.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from app.core.errors import InsufficientStockError, ValidationError
from app.db.models.common import utcnow
from app.db.models.inventory import FinishedProduct, RawMaterial

log = logging.getLogger(__name__)


def raw_stock(db: Session, material_ids: Iterable[str]) -> dict[str, Decimal]:
    ids = list(set(material_ids))
    if not ids:
        return {}
    rows = db.execute(select(RawMaterial.id, RawMaterial.current_stock).where(RawMaterial.id.in_(ids))).all()
    return {r.id: Decimal(r.current_stock) for r in rows}


def finished_stock(db: Session, product_ids: Iterable[str]) -> dict[str, Decimal]:
    ids = list(set(product_ids))
    if not ids:
        return {}
    rows = db.execute(
        select(FinishedProduct.product_id, FinishedProduct.quantity_available).where(FinishedProduct.product_id.in_(ids))
    ).all()
    return {r.product_id: Decimal(r.quantity_available) for r in rows}


def issue_raw_material(db: Session, *, material_id: str, qty: Decimal) -> dict:
    """Deduct `qty` clamped at zero. Returns a ledger snapshot entry."""
    before = db.execute(
        select(RawMaterial.current_stock, RawMaterial.name, RawMaterial.uom).where(RawMaterial.id == material_id)
    ).first()
    if before is None:
        log.warning("material %s missing from inventory, nothing issued", material_id)
        return {"material_id": material_id, "requested": float(qty), "issued": 0.0, "missing": True}

    db.execute(
        update(RawMaterial)
        .where(RawMaterial.id == material_id)
        .values(
            current_stock=case(
                (RawMaterial.current_stock > qty, RawMaterial.current_stock - qty),
                else_=0,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session="fetch")
    )
    after = db.execute(select(RawMaterial.current_stock).where(RawMaterial.id == material_id)).scalar_one()
    issued = Decimal(before.current_stock) - Decimal(after)
    if issued < qty:
        log.warning("material %s short on issue: requested %s, issued %s", material_id, qty, issued)
    return {
        "material_id": material_id,
        "name": before.name,
        "uom": before.uom,
        "requested": float(qty),
        "issued": float(issued),
        "stock_before": float(before.current_stock),
        "stock_after": float(after),
    }


def receive_raw_material(db: Session, *, material_id: str, qty: Decimal) -> bool:
    if qty <= 0:
        raise ValidationError("Received quantity must be positive", field="quantity")
    result = db.execute(
        update(RawMaterial)
        .where(RawMaterial.id == material_id)
        .values(current_stock=RawMaterial.current_stock + qty, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount > 0


def receive_finished_goods(db: Session, *, product_id: str, qty: Decimal, unit_price: Decimal | None = None) -> None:
    """Add `qty` to the product's finished stock, creating the row on first receipt."""
    result = db.execute(
        update(FinishedProduct)
        .where(FinishedProduct.product_id == product_id)
        .values(quantity_available=FinishedProduct.quantity_available + qty, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        db.add(FinishedProduct(product_id=product_id, quantity_available=qty, unit_price=unit_price or 0))
        db.flush()


def take_finished_goods(db: Session, *, product_id: str, qty: Decimal) -> None:
    """Deduct `qty`; fails instead of going negative."""
    if qty <= 0:
        return
    result = db.execute(
        update(FinishedProduct)
        .where(FinishedProduct.product_id == product_id, FinishedProduct.quantity_available >= qty)
        .values(quantity_available=FinishedProduct.quantity_available - qty, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        raise InsufficientStockError(
            f"Not enough finished stock for product {product_id}",
            details={"product_id": product_id, "requested": float(qty)},
        )


def adjust_finished_goods(db: Session, *, finished_product_id: str, delta: Decimal) -> None:
    """Signed manual adjustment; rejected when the result would be negative."""
    stmt = (
        update(FinishedProduct)
        .where(FinishedProduct.id == finished_product_id)
        .values(quantity_available=FinishedProduct.quantity_available + delta, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if delta < 0:
        stmt = stmt.where(FinishedProduct.quantity_available >= -delta)
    result = db.execute(stmt)
    if result.rowcount == 0:
        raise InsufficientStockError(
            "Adjustment would make finished stock negative",
            details={"finished_product_id": finished_product_id, "delta": float(delta)},
        )
