from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import DomainStateError, ValidationError
from app.core.security import Principal, require_access, require_user
from app.db.models.purchasing import GoodsReceipt, PurchaseOrder, Supplier
from app.db.session import get_db
from services._crud import commit_refresh, get_or_404, iso, num
from services.purchasing import service

router = APIRouter(prefix="/purchasing", tags=["purchasing"])


class PurchaseLineIn(BaseModel):
    material_id: str
    quantity: Decimal
    unit_price: Decimal | None = None


class PurchaseOrderIn(BaseModel):
    supplier_id: str | None = None
    supplier_name: str | None = None
    items: list[PurchaseLineIn] = Field(default_factory=list)
    po_number: str | None = None
    order_date: date | None = None
    expected_date: date | None = None
    notes: str | None = None


class StatusIn(BaseModel):
    status: str


class ReceiptLineIn(BaseModel):
    material_id: str
    received_quantity: Decimal
    defective_quantity: Decimal = Decimal("0")
    remarks: str | None = None


class GoodsReceiptIn(BaseModel):
    items: list[ReceiptLineIn] = Field(default_factory=list)
    received_date: date | None = None
    remarks: str | None = None


def _supplier_out(s: Supplier) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "contact_person": s.contact_person,
        "email": s.email,
        "phone": s.phone,
        "address": s.address,
        "is_active": s.is_active,
    }


def _po_out(po: PurchaseOrder) -> dict:
    return {
        "id": po.id,
        "po_number": po.po_number,
        "supplier_id": po.supplier_id,
        "supplier_name": po.supplier.name if po.supplier else None,
        "order_date": iso(po.order_date),
        "expected_date": iso(po.expected_date),
        "status": po.status,
        "total_amount": num(po.total_amount),
        "received_at": iso(po.received_at),
        "items": [
            {
                "id": ln.id,
                "material_id": ln.material_id,
                "material_name": ln.material.name if ln.material else None,
                "quantity": num(ln.quantity),
                "unit_price": num(ln.unit_price),
            }
            for ln in po.lines
        ],
    }


def _grn_out(grn: GoodsReceipt) -> dict:
    return {
        "id": grn.id,
        "grn_number": grn.grn_number,
        "purchase_order_id": grn.order_id,
        "received_date": iso(grn.received_date),
        "is_replacement": grn.is_replacement,
        "remarks": grn.remarks,
        "items": [
            {
                "material_id": gl.material_id,
                "order_line_id": gl.order_line_id,
                "received_quantity": num(gl.received_quantity),
                "defective_quantity": num(gl.defective_quantity),
                "accepted_quantity": num(gl.accepted_quantity),
                "remarks": gl.remarks,
            }
            for gl in grn.lines
        ],
    }


# ============= SUPPLIERS =============

@router.get("/suppliers")
def list_suppliers(db: Session = Depends(get_db), _=Depends(require_user), limit: int = 200):
    ss = db.query(Supplier).order_by(Supplier.name.asc()).limit(limit).all()
    return [_supplier_out(s) for s in ss]


@router.get("/suppliers/{supplier_id}")
def read_supplier(supplier_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return _supplier_out(get_or_404(db, Supplier, supplier_id))


@router.post("/suppliers", status_code=201)
def create_supplier(payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/purchasing"))):
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", field="name")
    if db.query(Supplier).filter(Supplier.name == name).first():
        raise DomainStateError(f"Supplier {name} already exists", code="duplicate_supplier")
    s = Supplier(
        name=name,
        contact_person=payload.get("contact_person"),
        email=payload.get("email"),
        phone=payload.get("phone"),
        address=payload.get("address"),
        meta=payload.get("meta") or {},
    )
    return _supplier_out(commit_refresh(db, s))


@router.put("/suppliers/{supplier_id}")
def update_supplier(supplier_id: str, payload: dict, db: Session = Depends(get_db), _=Depends(require_access("/purchasing"))):
    s = get_or_404(db, Supplier, supplier_id)
    for field in ("name", "contact_person", "email", "phone", "address", "is_active"):
        if field in payload:
            setattr(s, field, payload[field])
    return _supplier_out(commit_refresh(db, s))


@router.delete("/suppliers/{supplier_id}")
def delete_supplier(supplier_id: str, db: Session = Depends(get_db), _=Depends(require_access("/purchasing"))):
    s = get_or_404(db, Supplier, supplier_id)
    if db.query(PurchaseOrder.id).filter(PurchaseOrder.supplier_id == s.id).first():
        raise DomainStateError(f"Supplier {s.name} has purchase orders; deactivate it instead")
    db.delete(s)
    db.commit()
    return {"ok": True}


# ============= PURCHASE ORDERS =============

@router.get("/orders")
def list_purchase_orders(
    db: Session = Depends(get_db),
    _=Depends(require_user),
    status: str | None = None,
    limit: int = 200,
):
    q = db.query(PurchaseOrder)
    if status:
        q = q.filter(PurchaseOrder.status == status)
    return [_po_out(po) for po in q.order_by(PurchaseOrder.created_at.desc()).limit(limit).all()]


@router.get("/orders/{po_id}")
def get_purchase_order(po_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return _po_out(service.get_purchase_order(db, po_id))


@router.post("/orders", status_code=201)
def create_purchase_order(
    payload: PurchaseOrderIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/purchasing")),
):
    po = service.create_purchase_order(db, payload.model_dump(), actor=principal.user_id)
    return _po_out(po)


@router.patch("/orders/{po_id}/status")
def update_purchase_order_status(
    po_id: str,
    payload: StatusIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/purchasing")),
):
    return _po_out(service.set_purchase_order_status(db, po_id, payload.status, actor=principal.user_id))


# ============= GOODS RECEIPTS =============

@router.get("/orders/{po_id}/grns")
def list_goods_receipts(po_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return [_grn_out(grn) for grn in service.get_purchase_order(db, po_id).receipts]


@router.post("/orders/{po_id}/grns", status_code=201)
def create_goods_receipt(
    po_id: str,
    payload: GoodsReceiptIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/purchasing")),
):
    grn = service.create_goods_receipt(db, po_id, payload.model_dump(), actor=principal.user_id)
    return _grn_out(grn)


@router.post("/orders/{po_id}/replacement-grns", status_code=201)
def create_replacement_receipt(
    po_id: str,
    payload: GoodsReceiptIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/purchasing")),
):
    grn = service.create_goods_receipt(db, po_id, payload.model_dump(), replacement=True, actor=principal.user_id)
    return _grn_out(grn)


@router.get("/orders/{po_id}/pending-quantities")
def get_pending_quantities(po_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    po = service.get_purchase_order(db, po_id)
    lines = service.pending_quantities(po)
    return {
        "purchase_order_id": po.id,
        "po_number": po.po_number,
        "status": po.status,
        "total_pending": sum(ln["pending"] for ln in lines),
        "lines": lines,
    }
