from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.core.security import Principal, require_access, require_user
from app.db.models.inventory import RawMaterial
from app.db.models.manufacturing import ManufacturingBatch, WorkflowStep
from app.db.session import get_db
from services._crud import iso, num
from services.catalog.service import get_product, product_bom
from services.inventory.ledger import raw_stock
from services.manufacturing import service
from services.manufacturing.planning import is_feasible, material_requirements

router = APIRouter(prefix="/manufacturing", tags=["manufacturing"])


class BatchIn(BaseModel):
    product_id: str
    quantity: Decimal
    sales_order_id: str | None = None
    notes: str | None = None
    check_materials: bool = True


class BatchUpdateIn(BaseModel):
    quantity: Decimal | None = None
    notes: str | None = None
    estimated_completion_date: datetime | None = None


class StageIn(BaseModel):
    stage: str


class StatusIn(BaseModel):
    status: str


class StepStatusIn(BaseModel):
    status: str
    assigned_team: str | None = None
    notes: str | None = None


def _step_out(s: WorkflowStep) -> dict:
    return {
        "id": s.id,
        "batch_id": s.batch_id,
        "step_name": s.step_name,
        "sequence": s.sequence,
        "status": s.status,
        "assigned_team": s.assigned_team,
        "sub_component_id": s.sub_component_id,
        "notes": s.notes,
        "started_at": iso(s.started_at),
        "completed_at": iso(s.completed_at),
    }


def _batch_out(b: ManufacturingBatch, *, with_steps: bool = False) -> dict:
    out = {
        "id": b.id,
        "batch_number": b.batch_number,
        "product_id": b.product_id,
        "product_name": b.product.name if b.product else None,
        "quantity": num(b.quantity),
        "stages": list(b.stages or []),
        "stage_completion_dates": dict(b.stage_completion_dates or {}),
        "current_stage": b.current_stage,
        "progress": b.progress,
        "status": b.status,
        "sales_order_id": b.sales_order_id,
        "raw_materials_used": b.raw_materials_used,
        "notes": b.notes,
        "start_date": iso(b.start_date),
        "estimated_completion_date": iso(b.estimated_completion_date),
        "completed_at": iso(b.completed_at),
        "version": b.version,
    }
    if with_steps:
        out["workflow_steps"] = [_step_out(s) for s in b.steps]
    return out


@router.get("/batches")
def list_batches(
    db: Session = Depends(get_db),
    _=Depends(require_user),
    status: str | None = None,
    product_id: str | None = None,
    sales_order_id: str | None = None,
    limit: int = 200,
):
    q = db.query(ManufacturingBatch)
    if status:
        q = q.filter(ManufacturingBatch.status == status)
    if product_id:
        q = q.filter(ManufacturingBatch.product_id == product_id)
    if sales_order_id:
        q = q.filter(ManufacturingBatch.sales_order_id == sales_order_id)
    return [_batch_out(b) for b in q.order_by(ManufacturingBatch.created_at.desc()).limit(limit).all()]


@router.post("/batches", status_code=201)
def create_batch(
    payload: BatchIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/manufacturing")),
):
    batch = service.start_batch(
        db,
        product_id=payload.product_id,
        quantity=payload.quantity,
        sales_order_id=payload.sales_order_id,
        notes=payload.notes,
        check_materials=payload.check_materials,
        actor=principal.user_id,
    )
    return _batch_out(batch, with_steps=True)


@router.get("/batches/{batch_id}")
def get_batch(batch_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return _batch_out(service.get_batch(db, batch_id), with_steps=True)


@router.put("/batches/{batch_id}")
def update_batch(
    batch_id: str,
    payload: BatchUpdateIn,
    db: Session = Depends(get_db),
    _=Depends(require_access("/manufacturing")),
):
    batch = service.update_batch(db, batch_id, payload.model_dump(exclude_unset=True))
    return _batch_out(batch, with_steps=True)


@router.delete("/batches/{batch_id}")
def delete_batch(batch_id: str, db: Session = Depends(get_db), _=Depends(require_access("/manufacturing"))):
    service.delete_batch(db, batch_id)
    return {"ok": True}


@router.patch("/batches/{batch_id}/stage")
def advance_stage(
    batch_id: str,
    payload: StageIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/manufacturing")),
):
    batch = service.advance_stage(db, batch_id, payload.stage, actor=principal.user_id)
    return _batch_out(batch, with_steps=True)


@router.patch("/batches/{batch_id}/status")
def update_batch_status(
    batch_id: str,
    payload: StatusIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/manufacturing")),
):
    batch = service.set_batch_status(db, batch_id, payload.status, actor=principal.user_id)
    return _batch_out(batch, with_steps=True)


@router.get("/batches/{batch_id}/workflows")
def list_workflows(batch_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return [_step_out(s) for s in service.get_batch(db, batch_id).steps]


@router.get("/batches/{batch_id}/progress")
def get_progress(batch_id: str, db: Session = Depends(get_db), _=Depends(require_user)):
    return service.batch_progress(service.get_batch(db, batch_id))


@router.patch("/workflows/{step_id}/status")
def update_workflow_status(
    step_id: str,
    payload: StepStatusIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_access("/manufacturing")),
):
    step = service.update_step_status(
        db,
        step_id,
        payload.status,
        assigned_team=payload.assigned_team,
        notes=payload.notes,
        actor=principal.user_id,
    )
    return _step_out(step)


@router.get("/material-requirements/{product_id}")
def material_requirements_report(
    product_id: str,
    quantity: Decimal = Query(Decimal("1")),
    db: Session = Depends(get_db),
    _=Depends(require_user),
):
    if quantity <= 0:
        raise ValidationError("quantity must be greater than zero", field="quantity")
    product = get_product(db, product_id)
    bom = product_bom(product)
    needs = material_requirements(bom, quantity)
    stock = raw_stock(db, needs)
    names = {m.id: m for m in db.query(RawMaterial).filter(RawMaterial.id.in_(list(needs))).all()}
    lines = []
    for mid, required in needs.items():
        available = stock.get(mid, Decimal("0"))
        m = names.get(mid)
        lines.append(
            {
                "material_id": mid,
                "material_code": m.material_code if m else None,
                "name": m.name if m else None,
                "uom": m.uom if m else None,
                "required": num(required),
                "available": num(available),
                "shortage": num(max(Decimal("0"), required - available)),
            }
        )
    return {
        "product_id": product.id,
        "quantity": num(quantity),
        "feasible": is_feasible(bom, quantity, stock),
        "materials": lines,
    }
