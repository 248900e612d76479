from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.errors import DomainStateError, ValidationError
from app.core.security import require_access, require_user
from app.db.models.catalog import BOMLine
from app.db.models.inventory import FinishedProduct, RawMaterial
from app.db.models.purchasing import PurchaseOrderLine
from app.db.session import get_db
from services._crud import as_decimal, commit_refresh, get_or_404, iso, num
from services.catalog.service import get_product
from services.inventory.ledger import adjust_finished_goods

router = APIRouter(prefix="/inventory", tags=["inventory"])


class QuantityDeltaIn(BaseModel):
    delta: Decimal


def _material_out(m: RawMaterial) -> dict:
    return {
        "id": m.id,
        "material_code": m.material_code,
        "name": m.name,
        "uom": m.uom,
        "current_stock": num(m.current_stock),
        "minimum_stock": num(m.minimum_stock),
        "unit_price": num(m.unit_price),
        "is_low": m.current_stock <= m.minimum_stock,
        "updated_at": iso(m.updated_at),
    }


def _finished_out(f: FinishedProduct) -> dict:
    return {
        "id": f.id,
        "product_id": f.product_id,
        "product_code": f.product.product_code if f.product else None,
        "product_name": f.product.name if f.product else None,
        "quantity_available": num(f.quantity_available),
        "unit_price": num(f.unit_price),
        "storage_location": f.storage_location,
        "updated_at": iso(f.updated_at),
    }


def _non_negative(payload: dict, field: str, default=0) -> Decimal:
    value = as_decimal(payload.get(field, default) or 0, field)
    if value < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return value


# ============= RAW MATERIALS =============

@router.get("/raw-materials")
def list_raw_materials(db: Session = Depends(get_db), _=Depends(require_user), limit: int = 500):
    ms = db.query(RawMaterial).order_by(RawMaterial.name.asc()).limit(limit).all()
    return [_material_out(m) for m in ms]


@router.get("/raw-materials/low-stock")
def list_low_stock(db: Session = Depends(get_db), _=Depends(require_user)):
    ms = (
        db.query(RawMaterial)
        .filter(RawMaterial.current_stock <= RawMaterial.minimum_stock)
        .order_by(RawMaterial.current_stock.asc())
        .all()
    )
    return [_material_out(m) for m in ms]


@router.get("/raw-materials/{material_id}")
def read_raw_material(material_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return _material_out(get_or_404(db, RawMaterial, material_id))


@router.post("/raw-materials", status_code=201)
def create_raw_material(payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/inventory"))):
    code = (payload.get("material_code") or "").strip()
    name = (payload.get("name") or "").strip()
    if not code or not name:
        raise ValidationError("material_code and name are required", field="material_code")
    if db.query(RawMaterial).filter(RawMaterial.material_code == code).first():
        raise DomainStateError(f"Material code {code} already exists", code="duplicate_material_code")
    m = RawMaterial(
        material_code=code,
        name=name,
        uom=payload.get("uom") or "EA",
        current_stock=_non_negative(payload, "current_stock"),
        minimum_stock=_non_negative(payload, "minimum_stock"),
        unit_price=_non_negative(payload, "unit_price"),
        meta=payload.get("meta") or {},
    )
    return _material_out(commit_refresh(db, m))


@router.put("/raw-materials/{material_id}")
def update_raw_material(material_id: str, payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/inventory"))):
    m = get_or_404(db, RawMaterial, material_id)
    for field in ("name", "uom"):
        if payload.get(field):
            setattr(m, field, payload[field])
    # Admin stock correction; regular movement goes through purchasing and batches
    for field in ("current_stock", "minimum_stock", "unit_price"):
        if field in payload:
            setattr(m, field, _non_negative(payload, field))
    return _material_out(commit_refresh(db, m))


@router.delete("/raw-materials/{material_id}")
def delete_raw_material(material_id: str, db: Session = Depends(get_db), _=Depends(require_access("/inventory"))):
    m = get_or_404(db, RawMaterial, material_id)
    in_use = (
        db.query(BOMLine.id).filter(BOMLine.material_id == m.id).first()
        or db.query(PurchaseOrderLine.id).filter(PurchaseOrderLine.material_id == m.id).first()
    )
    if in_use:
        raise DomainStateError(f"Material {m.material_code} is used by a BOM or purchase order")
    db.delete(m)
    db.commit()
    return {"ok": True}


# ============= FINISHED PRODUCTS =============

@router.get("/finished-products")
def list_finished_products(db: Session = Depends(get_db), _=Depends(require_user), limit: int = 500):
    fs = db.query(FinishedProduct).order_by(FinishedProduct.updated_at.desc()).limit(limit).all()
    return [_finished_out(f) for f in fs]


@router.get("/finished-products/{fp_id}")
def read_finished_product(fp_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return _finished_out(get_or_404(db, FinishedProduct, fp_id, "FinishedProduct"))


@router.post("/finished-products", status_code=201)
def create_finished_product(payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/inventory"))):
    product = get_product(db, payload.get("product_id") or "")
    if db.query(FinishedProduct).filter(FinishedProduct.product_id == product.id).first():
        raise DomainStateError(f"Finished stock for {product.product_code} already exists", code="duplicate_finished_product")
    f = FinishedProduct(
        product_id=product.id,
        quantity_available=_non_negative(payload, "quantity_available"),
        unit_price=_non_negative(payload, "unit_price", product.unit_price),
        storage_location=payload.get("storage_location"),
    )
    return _finished_out(commit_refresh(db, f))


@router.put("/finished-products/{fp_id}")
def update_finished_product(fp_id: str, payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/inventory"))):
    f = get_or_404(db, FinishedProduct, fp_id, "FinishedProduct")
    if "storage_location" in payload:
        f.storage_location = payload["storage_location"]
    if "unit_price" in payload:
        f.unit_price = _non_negative(payload, "unit_price")
    if "quantity_available" in payload:
        f.quantity_available = _non_negative(payload, "quantity_available")
    return _finished_out(commit_refresh(db, f))


@router.patch("/finished-products/{fp_id}/quantity")
def adjust_finished_product(
    fp_id: str,
    payload: QuantityDeltaIn,
    db: Session = Depends(get_db),
    _=Depends(require_access("/inventory")),
):
    get_or_404(db, FinishedProduct, fp_id, "FinishedProduct")
    try:
        adjust_finished_goods(db, finished_product_id=fp_id, delta=payload.delta)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _finished_out(get_or_404(db, FinishedProduct, fp_id, "FinishedProduct"))


@router.delete("/finished-products/{fp_id}")
def delete_finished_product(fp_id: str, db: Session = Depends(get_db), _=Depends(require_access("/inventory"))):
    f = get_or_404(db, FinishedProduct, fp_id, "FinishedProduct")
    db.delete(f)
    db.commit()
    return {"ok": True}
