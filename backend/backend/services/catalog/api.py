from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.errors import DomainStateError, NotFoundError, ValidationError
from app.core.security import require_access, require_user
from app.db.models.catalog import BOMLine, Product, SubComponent
from app.db.models.inventory import FinishedProduct, RawMaterial
from app.db.models.manufacturing import ManufacturingBatch
from app.db.models.sales import SalesOrderLine
from app.db.session import get_db
from services._crud import as_decimal, commit_refresh, num
from services.catalog.service import get_product
from services.manufacturing.stages import resolve_stages

router = APIRouter(prefix="/catalog", tags=["catalog"])


def _product_out(p: Product) -> dict:
    return {
        "id": p.id,
        "product_code": p.product_code,
        "name": p.name,
        "category": p.category,
        "description": p.description,
        "unit_price": num(p.unit_price),
        "stages": list(p.stages or []),
        "effective_stages": resolve_stages(p),
        "bom": [
            {
                "id": b.id,
                "material_id": b.material_id,
                "sub_component_id": b.sub_component_id,
                "quantity_required": num(b.quantity_required),
                "uom": b.uom,
            }
            for b in p.bom_lines
        ],
        "sub_components": [
            {"id": sc.id, "name": sc.name, "sequence": sc.sequence, "stages": list(sc.stages or [])}
            for sc in p.sub_components
        ],
    }


def _stage_list(value, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(s, str) and s.strip() for s in value):
        raise ValidationError(f"{field} must be a list of stage names", field=field)
    return [s.strip() for s in value]


def _apply_structure(db: Session, p: Product, payload: dict) -> None:
    """Replace sub-components and BOM lines from the payload, when given."""
    by_name: dict[str, SubComponent] = {}
    if "sub_components" in payload:
        for line in p.bom_lines:
            line.sub_component = None
        p.sub_components = []
        for i, sc in enumerate(payload.get("sub_components") or []):
            name = (sc.get("name") or "").strip()
            if not name:
                raise ValidationError("sub-component name is required", field="sub_components")
            obj = SubComponent(name=name, sequence=sc.get("sequence", i), stages=_stage_list(sc.get("stages"), "stages"))
            p.sub_components.append(obj)
            by_name[name] = obj
    if "bom" in payload:
        p.bom_lines = []
        for ln in payload.get("bom") or []:
            material_id = ln.get("material_id")
            if not material_id or db.get(RawMaterial, material_id) is None:
                raise NotFoundError("RawMaterial", material_id)
            qty = as_decimal(ln.get("quantity_required"), "quantity_required")
            if qty <= 0:
                raise ValidationError("quantity_required must be greater than zero", field="quantity_required")
            line = BOMLine(material_id=material_id, quantity_required=qty, uom=ln.get("uom") or "EA")
            sc_name = ln.get("sub_component")
            if sc_name:
                if sc_name not in by_name:
                    raise ValidationError(f"unknown sub-component '{sc_name}'", field="bom")
                line.sub_component = by_name[sc_name]
            p.bom_lines.append(line)


@router.get("/products")
def list_products(db: Session = Depends(get_db), _=Depends(require_user), limit: int = 200):
    ps = db.query(Product).order_by(Product.name.asc()).limit(limit).all()
    return [_product_out(p) for p in ps]


@router.get("/products/{product_id}")
def read_product(product_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return _product_out(get_product(db, product_id))


@router.post("/products", status_code=201)
def create_product(payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/catalog"))):
    code = (payload.get("product_code") or "").strip()
    name = (payload.get("name") or "").strip()
    if not code or not name:
        raise ValidationError("product_code and name are required", field="product_code")
    if db.query(Product).filter(Product.product_code == code).first():
        raise DomainStateError(f"Product code {code} already exists", code="duplicate_product_code")
    p = Product(
        product_code=code,
        name=name,
        category=payload.get("category"),
        description=payload.get("description"),
        unit_price=as_decimal(payload.get("unit_price") or 0, "unit_price"),
        stages=_stage_list(payload.get("stages"), "stages"),
        meta=payload.get("meta") or {},
    )
    _apply_structure(db, p, payload)
    return _product_out(commit_refresh(db, p))


@router.put("/products/{product_id}")
def update_product(product_id: str, payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/catalog"))):
    p = get_product(db, product_id)
    for field in ("name", "category", "description"):
        if field in payload:
            setattr(p, field, payload[field])
    if "unit_price" in payload:
        p.unit_price = as_decimal(payload["unit_price"], "unit_price")
    if "stages" in payload:
        p.stages = _stage_list(payload["stages"], "stages")
    _apply_structure(db, p, payload)
    return _product_out(commit_refresh(db, p))


@router.delete("/products/{product_id}")
def delete_product(product_id: str, db: Session = Depends(get_db), _=Depends(require_access("/catalog"))):
    p = get_product(db, product_id)
    in_use = (
        db.query(ManufacturingBatch.id).filter(ManufacturingBatch.product_id == p.id).first()
        or db.query(SalesOrderLine.id).filter(SalesOrderLine.product_id == p.id).first()
    )
    if in_use:
        raise DomainStateError(f"Product {p.product_code} is referenced by orders or batches")
    fg = db.query(FinishedProduct).filter(FinishedProduct.product_id == p.id).first()
    if fg is not None:
        if fg.quantity_available > 0:
            raise DomainStateError(f"Product {p.product_code} still has finished stock")
        db.delete(fg)
    db.delete(p)
    db.commit()
    return {"ok": True}

