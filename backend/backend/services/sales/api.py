from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Principal, require_access, require_user
from app.db.models.manufacturing import ManufacturingBatch
from app.db.models.sales import SalesOrder
from app.db.session import get_db
from services._crud import iso, num
from services.sales import service

router = APIRouter(prefix="/sales", tags=["sales"])


class OrderItemIn(BaseModel):
    product_id: str
    quantity: Decimal
    unit_price: Decimal | None = None


class OrderIn(BaseModel):
    customer_name: str
    items: list[OrderItemIn] = Field(default_factory=list)
    order_number: str | None = None
    order_date: date | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    delivery_address: str | None = None
    discount: Decimal | None = None
    gst: Decimal | None = None
    notes: str | None = None


class OrderUpdateIn(BaseModel):
    customer_name: str | None = None
    items: list[OrderItemIn] | None = None
    order_date: date | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    delivery_address: str | None = None
    discount: Decimal | None = None
    gst: Decimal | None = None
    notes: str | None = None


class StatusIn(BaseModel):
    status: str


def _order_out(o: SalesOrder, *, detail: bool = False) -> dict:
    out = {
        "id": o.id,
        "order_number": o.order_number,
        "order_date": iso(o.order_date),
        "customer_name": o.customer_name,
        "status": o.status,
        "discount": num(o.discount),
        "gst": num(o.gst),
        "subtotal": num(o.subtotal),
        "total_amount": num(o.total_amount),
        "created_at": iso(o.created_at),
        "updated_at": iso(o.updated_at),
    }
    if not detail:
        return out
    out.update(
        {
            "customer_email": o.customer_email,
            "customer_phone": o.customer_phone,
            "delivery_address": o.delivery_address,
            "notes": o.notes,
            "items": [
                {
                    "id": ln.id,
                    "line_number": ln.line_number,
                    "product_id": ln.product_id,
                    "product_name": ln.product.name if ln.product else None,
                    "quantity": num(ln.quantity),
                    "unit_price": num(ln.unit_price),
                }
                for ln in o.lines
            ],
            "fulfillments": [
                {
                    "id": pf.id,
                    "product_id": pf.product_id,
                    "total_quantity": num(pf.total_quantity),
                    "in_stock_quantity": num(pf.in_stock_quantity),
                    "manufacturing_quantity": num(pf.manufacturing_quantity),
                    "batch_ids": [link.batch_id for link in pf.batch_links],
                }
                for pf in o.fulfillments
            ],
        }
    )
    return out


@router.get("/orders")
def list_orders(
    db: Session = Depends(get_db),
    _=Depends(require_user),
    status: str | None = None,
    limit: int = 200,
):
    q = db.query(SalesOrder)
    if status:
        q = q.filter(SalesOrder.status == status)
    return [_order_out(o) for o in q.order_by(SalesOrder.created_at.desc()).limit(limit).all()]


@router.get("/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return _order_out(service.get_order(db, order_id), detail=True)


@router.get("/orders/{order_id}/batches")
def list_order_batches(order_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    service.get_order(db, order_id)
    bs = db.query(ManufacturingBatch).filter(ManufacturingBatch.sales_order_id == order_id).all()
    return [
        {"id": b.id, "batch_number": b.batch_number, "status": b.status, "current_stage": b.current_stage, "progress": b.progress}
        for b in bs
    ]


@router.post("/orders", status_code=201)
def create_order(
    payload: OrderIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/sales")),
):
    order = service.create_order(db, payload.model_dump(), actor=principal.user_id)
    return _order_out(order, detail=True)


@router.put("/orders/{order_id}")
def update_order(
    order_id: str,
    payload: OrderUpdateIn,
    db: Session = Depends(get_db),
    _=Depends(require_access("/sales")),
):
    order = service.update_order(db, order_id, payload.model_dump(exclude_unset=True))
    return _order_out(order, detail=True)


@router.delete("/orders/{order_id}")
def delete_order(order_id: str, db: Session = Depends(get_db), _=Depends(require_access("/sales"))):
    service.delete_order(db, order_id)
    return {"ok": True}


@router.post("/orders/{order_id}/confirm")
def confirm_order(
    order_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/sales")),
):
    return _order_out(service.confirm_order(db, order_id, actor=principal.user_id), detail=True)


@router.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/sales")),
):
    order = service.set_order_status(db, order_id, payload.status, actor=principal.user_id)
    return _order_out(order, detail=True)
