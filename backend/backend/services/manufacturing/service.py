"""
Batch orchestration and the stage transition engine.

create_batch only flushes so order confirmation can build batches inside its
own transaction. start_batch, advance_stage, cancel_batch and
update_step_status are complete units of work: they commit, and emit
notifications only after the commit succeeded.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import ConcurrencyError, DomainStateError, InsufficientStockError, NotFoundError, ValidationError
from app.core.states import BATCH_FLOW, STEP_FLOW, BatchStatus, StepStatus
from app.db.models.catalog import Product
from app.db.models.common import utcnow
from app.db.models.inventory import RawMaterial
from app.db.models.manufacturing import BatchTransition, ManufacturingBatch, WorkflowStep
from app.db.models.sales import FulfillmentBatchLink, SalesOrder
from app.events.bus import publish
from services.catalog.service import get_product, product_bom
from services.inventory.ledger import issue_raw_material, raw_stock, receive_finished_goods
from services.manufacturing.planning import Shortage, material_requirements, shortages, stage_progress
from services.manufacturing.stages import find_stage, is_terminal, resolve_stages
from services.notifications.service import emit

log = logging.getLogger(__name__)

BATCH_LEAD_DAYS = int(os.getenv("BATCH_LEAD_DAYS", "7"))

MATERIALS_ISSUED = "MATERIALS_ISSUED"
FG_RECEIVED = "FG_RECEIVED"


def new_batch_number() -> str:
    return f"B-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


def get_batch(db: Session, batch_id: str, *, lock: bool = False) -> ManufacturingBatch:
    q = db.query(ManufacturingBatch).filter(ManufacturingBatch.id == batch_id)
    if lock:
        q = q.with_for_update()
    batch = q.first()
    if not batch:
        raise NotFoundError("ManufacturingBatch", batch_id)
    return batch


def _sub_component_for(product: Product, stage: str) -> str | None:
    for sc in product.sub_components:
        if stage in (sc.stages or []):
            return sc.id
    return None


def batch_event(batch: ManufacturingBatch) -> dict:
    return {
        "batch_id": batch.id,
        "batch_number": batch.batch_number,
        "product_id": batch.product_id,
        "quantity": float(batch.quantity),
        "current_stage": batch.current_stage,
        "progress": batch.progress,
        "status": batch.status,
        "sales_order_id": batch.sales_order_id,
    }


def create_batch(
    db: Session,
    *,
    product_id: str,
    quantity: Decimal,
    sales_order_id: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> ManufacturingBatch:
    """Build a batch, its workflow steps and its outbox event. Flushes, never commits."""
    product = get_product(db, product_id)
    if quantity is None or quantity <= 0:
        raise ValidationError("Batch quantity must be greater than zero", field="quantity")

    stages = resolve_stages(product)
    now = utcnow()
    batch = ManufacturingBatch(
        batch_number=new_batch_number(),
        product_id=product.id,
        quantity=quantity,
        stages=stages,
        stage_completion_dates={s: None for s in stages},
        current_stage=stages[0],
        progress=0,
        status=BatchStatus.IN_PROGRESS.value,
        sales_order_id=sales_order_id,
        notes=notes,
        start_date=now,
        estimated_completion_date=now + timedelta(days=BATCH_LEAD_DAYS),
        created_by=actor,
    )
    batch.steps = [
        WorkflowStep(
            step_name=stage,
            sequence=i,
            status=(StepStatus.IN_PROGRESS if i == 0 else StepStatus.NOT_STARTED).value,
            started_at=now if i == 0 else None,
            sub_component_id=_sub_component_for(product, stage),
        )
        for i, stage in enumerate(stages)
    ]
    db.add(batch)
    db.flush()
    publish(db, "manufacturing.batch.created", batch_event(batch))
    return batch


def shortage_details(db: Session, missing: list[Shortage]) -> list[dict]:
    names = {m.id: m.name for m in db.query(RawMaterial).filter(RawMaterial.id.in_([s.material_id for s in missing])).all()}
    return [
        {
            "material_id": s.material_id,
            "name": names.get(s.material_id),
            "required": float(s.required),
            "available": float(s.available),
            "missing": float(s.missing),
        }
        for s in missing
    ]


def notify_shortage(db: Session, *, subject: str, missing: list[dict], entity_type: str, entity_id: str) -> None:
    lines = ", ".join(f"{m['name'] or m['material_id']} (need {m['required']:g}, have {m['available']:g})" for m in missing)
    emit(
        db,
        title="Raw material shortage",
        message=f"{subject} is blocked by missing materials: {lines}",
        module="inventory",
        type="material_shortage",
        priority="high",
        entity_type=entity_type,
        entity_id=entity_id,
    )


def notify_batch_created(db: Session, batch: ManufacturingBatch) -> None:
    origin = " for a sales order" if batch.sales_order_id else ""
    emit(
        db,
        title="Manufacturing batch created",
        message=f"Batch {batch.batch_number} for {float(batch.quantity):g} units was created{origin}",
        module="manufacturing",
        type="batch_created",
        priority="normal",
        entity_type="manufacturing_batch",
        entity_id=batch.id,
    )


def start_batch(
    db: Session,
    *,
    product_id: str,
    quantity: Decimal,
    sales_order_id: str | None = None,
    notes: str | None = None,
    check_materials: bool = True,
    actor: str | None = None,
) -> ManufacturingBatch:
    product = get_product(db, product_id)
    if quantity is None or quantity <= 0:
        raise ValidationError("Batch quantity must be greater than zero", field="quantity")
    if sales_order_id and db.get(SalesOrder, sales_order_id) is None:
        raise NotFoundError("SalesOrder", sales_order_id)

    if check_materials:
        bom = product_bom(product)
        missing = shortages(bom, quantity, raw_stock(db, [b.material_id for b in bom]))
        if missing:
            detail = shortage_details(db, missing)
            notify_shortage(db, subject=f"Batch for {product.name}", missing=detail, entity_type="product", entity_id=product.id)
            raise InsufficientStockError(
                f"Insufficient raw materials to build {quantity:g} x {product.name}",
                details={"shortages": detail},
            )

    try:
        batch = create_batch(
            db,
            product_id=product.id,
            quantity=quantity,
            sales_order_id=sales_order_id,
            notes=notes,
            actor=actor,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(batch)
    log.info("batch %s created product=%s qty=%s", batch.batch_number, product.product_code, quantity)
    notify_batch_created(db, batch)
    return batch


def _has_transition(db: Session, batch_id: str, transition: str) -> bool:
    return (
        db.query(BatchTransition.id)
        .filter(BatchTransition.batch_id == batch_id, BatchTransition.transition == transition)
        .first()
        is not None
    )


def _issue_materials_once(db: Session, batch: ManufacturingBatch, actor: str | None) -> bool:
    if _has_transition(db, batch.id, MATERIALS_ISSUED):
        return False
    requirements = material_requirements(product_bom(batch.product), batch.quantity)
    used = [issue_raw_material(db, material_id=mid, qty=qty) for mid, qty in requirements.items()]
    batch.raw_materials_used = used
    db.add(BatchTransition(batch_id=batch.id, transition=MATERIALS_ISSUED, actor=actor, detail={"lines": len(used)}))
    db.flush()
    return True


def _receive_goods_once(db: Session, batch: ManufacturingBatch, actor: str | None) -> SalesOrder | None:
    from services.sales.service import settle_batch_completion

    if _has_transition(db, batch.id, FG_RECEIVED):
        return None
    receive_finished_goods(db, product_id=batch.product_id, qty=batch.quantity, unit_price=batch.product.unit_price)
    db.add(BatchTransition(batch_id=batch.id, transition=FG_RECEIVED, actor=actor, detail={"quantity": float(batch.quantity)}))
    db.flush()
    return settle_batch_completion(db, batch)


def _sync_steps(batch: ManufacturingBatch, index: int, terminal: bool, now) -> None:
    for step in batch.steps:
        if step.status in (StepStatus.COMPLETED.value, StepStatus.CANCELLED.value):
            continue
        if terminal or step.sequence < index:
            target = StepStatus.COMPLETED.value
        elif step.sequence == index:
            target = StepStatus.IN_PROGRESS.value
        else:
            continue
        if step.status == target:
            continue
        STEP_FLOW.check(step.status, target)
        step.status = target
        step.started_at = step.started_at or now
        if target == StepStatus.COMPLETED.value:
            step.completed_at = now


def advance_stage(db: Session, batch_id: str, target_stage: str, *, actor: str | None = None) -> ManufacturingBatch:
    """Move a batch to `target_stage` and apply its inventory side effects.

    Material issue happens once per batch, on its first move into a
    non-terminal stage; a batch jumped straight to the end issues nothing.
    Finished goods receipt and sales order settlement happen once, on the
    terminal stage. Everything commits together or not at all.
    """
    batch = get_batch(db, batch_id, lock=True)
    stages = list(batch.stages or [])
    index = find_stage(stages, target_stage)
    stage = stages[index]
    terminal = is_terminal(stages, index)
    next_status = BatchStatus.COMPLETED.value if terminal else BatchStatus.IN_PROGRESS.value
    BATCH_FLOW.check(batch.status, next_status)

    now = utcnow()
    was_completed = batch.status == BatchStatus.COMPLETED.value
    settled_order = None
    try:
        dates = dict(batch.stage_completion_dates or {})
        dates[stage] = now.isoformat()
        batch.stage_completion_dates = dates
        batch.current_stage = stage
        batch.progress = stage_progress(len(stages), index)
        batch.status = next_status
        if terminal and not was_completed:
            batch.completed_at = now
        _sync_steps(batch, index, terminal, now)

        if not terminal:
            _issue_materials_once(db, batch, actor)
        else:
            settled_order = _receive_goods_once(db, batch, actor)

        publish(db, "manufacturing.stage.advanced", {**batch_event(batch), "stage": stage})
        if terminal and not was_completed:
            publish(db, "manufacturing.batch.completed", batch_event(batch))
        db.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.rollback()
        raise ConcurrencyError("ManufacturingBatch", batch_id) from exc
    except Exception:
        db.rollback()
        raise

    db.refresh(batch)
    log.info("batch %s advanced to %s (%s%%)", batch.batch_number, stage, batch.progress)

    emit(
        db,
        title="Stage completed",
        message=f"Batch {batch.batch_number} reached stage '{stage}' ({batch.progress}% complete)",
        module="manufacturing",
        type="stage_completed",
        priority="normal",
        entity_type="manufacturing_batch",
        entity_id=batch.id,
    )
    if terminal and not was_completed:
        emit(
            db,
            title="Batch completed",
            message=f"Batch {batch.batch_number} finished; {float(batch.quantity):g} units added to finished goods",
            module="manufacturing",
            type="batch_completed",
            priority="high",
            entity_type="manufacturing_batch",
            entity_id=batch.id,
        )
    if settled_order is not None:
        emit(
            db,
            title="Sales order updated",
            message=f"Order {settled_order.order_number} is now {settled_order.status.replace('_', ' ')}",
            module="sales",
            type="order_status",
            priority="high" if settled_order.status == "confirmed" else "normal",
            entity_type="sales_order",
            entity_id=settled_order.id,
        )
    return batch


def cancel_batch(db: Session, batch_id: str, *, actor: str | None = None) -> ManufacturingBatch:
    """Stop a batch. Materials already issued are not returned to stock."""
    batch = get_batch(db, batch_id, lock=True)
    BATCH_FLOW.check(batch.status, BatchStatus.CANCELLED.value)
    try:
        batch.status = BatchStatus.CANCELLED.value
        for step in batch.steps:
            if STEP_FLOW.can(step.status, StepStatus.CANCELLED.value):
                step.status = StepStatus.CANCELLED.value
        publish(db, "manufacturing.batch.cancelled", {**batch_event(batch), "actor": actor})
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrencyError("ManufacturingBatch", batch_id) from exc
    db.refresh(batch)
    log.info("batch %s cancelled by %s", batch.batch_number, actor or "system")
    return batch


def set_batch_status(db: Session, batch_id: str, status: str, *, actor: str | None = None) -> ManufacturingBatch:
    target = BATCH_FLOW.parse(status)
    if target == BatchStatus.CANCELLED.value:
        return cancel_batch(db, batch_id, actor=actor)
    if target == BatchStatus.COMPLETED.value:
        batch = get_batch(db, batch_id)
        return advance_stage(db, batch_id, batch.stages[-1], actor=actor)
    batch = get_batch(db, batch_id)
    BATCH_FLOW.check(batch.status, target)
    return batch


def update_batch(db: Session, batch_id: str, payload: dict) -> ManufacturingBatch:
    batch = get_batch(db, batch_id, lock=True)
    if batch.status != BatchStatus.IN_PROGRESS.value:
        raise DomainStateError(f"Batch {batch.batch_number} is {batch.status} and can no longer be edited")
    if "quantity" in payload and payload["quantity"] is not None:
        qty = Decimal(str(payload["quantity"]))
        if qty <= 0:
            raise ValidationError("Batch quantity must be greater than zero", field="quantity")
        if qty != batch.quantity and _has_transition(db, batch.id, MATERIALS_ISSUED):
            raise DomainStateError("Quantity cannot change after materials were issued")
        batch.quantity = qty
    if "notes" in payload:
        batch.notes = payload.get("notes")
    if payload.get("estimated_completion_date"):
        batch.estimated_completion_date = payload["estimated_completion_date"]
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrencyError("ManufacturingBatch", batch_id) from exc
    db.refresh(batch)
    return batch


def delete_batch(db: Session, batch_id: str) -> None:
    batch = get_batch(db, batch_id, lock=True)
    if batch.status == BatchStatus.COMPLETED.value:
        raise DomainStateError(f"Completed batch {batch.batch_number} cannot be deleted")
    linked = db.query(FulfillmentBatchLink.id).filter(FulfillmentBatchLink.batch_id == batch.id).first()
    if linked:
        raise DomainStateError(
            f"Batch {batch.batch_number} fulfils a sales order and cannot be deleted",
            details={"sales_order_id": batch.sales_order_id},
        )
    db.query(BatchTransition).filter(BatchTransition.batch_id == batch.id).delete(synchronize_session=False)
    db.delete(batch)
    db.commit()
    log.info("batch %s deleted", batch.batch_number)


def get_step(db: Session, step_id: str) -> WorkflowStep:
    step = db.get(WorkflowStep, step_id)
    if step is None:
        raise NotFoundError("WorkflowStep", step_id)
    return step


def update_step_status(
    db: Session,
    step_id: str,
    status: str,
    *,
    assigned_team: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> WorkflowStep:
    """Change one step; completing steps drags the batch stage along.

    The batch follows its first open step. Once every step is completed the
    batch is advanced to its terminal stage, which receives finished goods.
    """
    step = get_step(db, step_id)
    target = STEP_FLOW.parse(status)
    if step.batch.status == BatchStatus.CANCELLED.value:
        raise DomainStateError("Steps of a cancelled batch cannot change")
    changed = target != step.status
    if changed:
        STEP_FLOW.check(step.status, target)
    now = utcnow()
    step.status = target
    if target == StepStatus.IN_PROGRESS.value and step.started_at is None:
        step.started_at = now
    if changed and target == StepStatus.COMPLETED.value:
        step.started_at = step.started_at or now
        step.completed_at = now
    if assigned_team is not None:
        step.assigned_team = assigned_team
    if notes is not None:
        step.notes = notes
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrencyError("WorkflowStep", step_id) from exc

    if changed and target == StepStatus.COMPLETED.value:
        _follow_steps(db, step.batch_id, actor)
    db.refresh(step)
    return step


def _follow_steps(db: Session, batch_id: str, actor: str | None) -> None:
    batch = get_batch(db, batch_id)
    if batch.status != BatchStatus.IN_PROGRESS.value:
        return
    stages = list(batch.stages or [])
    open_steps = [
        s.sequence
        for s in batch.steps
        if s.status not in (StepStatus.COMPLETED.value, StepStatus.CANCELLED.value)
    ]
    index = min(open_steps) if open_steps else len(stages) - 1
    if index <= find_stage(stages, batch.current_stage):
        return
    log.info("batch %s follows its workflow steps to %s", batch.batch_number, stages[index])
    advance_stage(db, batch_id, stages[index], actor=actor)


def batch_progress(batch: ManufacturingBatch) -> dict:
    counts = {s.value: 0 for s in StepStatus}
    for step in batch.steps:
        counts[step.status] = counts.get(step.status, 0) + 1
    return {
        "batch_id": batch.id,
        "batch_number": batch.batch_number,
        "status": batch.status,
        "current_stage": batch.current_stage,
        "progress": batch.progress,
        "total_steps": len(batch.steps),
        "steps_by_status": counts,
    }
