from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.errors import DomainStateError, NotFoundError, ValidationError
from app.core.states import PURCHASE_ORDER_FLOW, PurchaseOrderStatus
from app.db.models.common import utcnow
from app.db.models.inventory import RawMaterial
from app.db.models.purchasing import GoodsReceipt, GoodsReceiptLine, PurchaseOrder, PurchaseOrderLine, Supplier
from app.events.bus import publish
from services._crud import as_decimal, next_document_number
from services.inventory.ledger import receive_raw_material
from services.notifications.service import emit

log = logging.getLogger(__name__)


def get_purchase_order(db: Session, po_id: str, *, lock: bool = False) -> PurchaseOrder:
    q = db.query(PurchaseOrder).filter(PurchaseOrder.id == po_id)
    if lock:
        q = q.with_for_update()
    po = q.first()
    if not po:
        raise NotFoundError("PurchaseOrder", po_id)
    return po


def _resolve_supplier(db: Session, payload: dict) -> Supplier:
    supplier_id = payload.get("supplier_id")
    if supplier_id:
        supplier = db.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFoundError("Supplier", supplier_id)
        return supplier
    name = (payload.get("supplier_name") or "").strip()
    if not name:
        raise ValidationError("supplier_id or supplier_name is required", field="supplier_id")
    supplier = db.query(Supplier).filter(Supplier.name == name).first()
    if supplier is None:
        supplier = Supplier(name=name, meta={})
        db.add(supplier)
        db.flush()
    return supplier


def create_purchase_order(db: Session, payload: dict, *, actor: str | None = None) -> PurchaseOrder:
    lines = payload.get("items") or []
    if not lines:
        raise ValidationError("A purchase order needs at least one line", field="items")
    supplier = _resolve_supplier(db, payload)

    order_lines = []
    for i, ln in enumerate(lines, start=1):
        material_id = ln.get("material_id")
        if not material_id or db.get(RawMaterial, material_id) is None:
            raise NotFoundError("RawMaterial", material_id)
        qty = as_decimal(ln.get("quantity"), "quantity")
        if qty <= 0:
            raise ValidationError(f"Line {i}: quantity must be greater than zero", field="quantity")
        price = as_decimal(ln.get("unit_price") or 0, "unit_price")
        if price < 0:
            raise ValidationError(f"Line {i}: unit_price cannot be negative", field="unit_price")
        order_lines.append(PurchaseOrderLine(line_number=i, material_id=material_id, quantity=qty, unit_price=price))

    order_date = payload.get("order_date") or date.today()
    po = PurchaseOrder(
        po_number=payload.get("po_number") or next_document_number(db, PurchaseOrder.po_number, "PO", order_date),
        supplier_id=supplier.id,
        order_date=order_date,
        expected_date=payload.get("expected_date"),
        status=PurchaseOrderStatus.ORDERED.value,
        total_amount=sum((ln.quantity * ln.unit_price for ln in order_lines), Decimal("0")),
        notes=payload.get("notes"),
        created_by=actor,
    )
    po.lines = order_lines
    db.add(po)
    db.commit()
    db.refresh(po)
    log.info("purchase order %s placed with %s", po.po_number, supplier.name)
    return po


@dataclass
class LineBalance:
    line: PurchaseOrderLine
    accepted: Decimal = Decimal("0")
    defective: Decimal = Decimal("0")
    replaced: Decimal = Decimal("0")

    @property
    def pending(self) -> Decimal:
        return max(Decimal("0"), self.line.quantity - self.accepted)

    @property
    def replaceable(self) -> Decimal:
        return max(Decimal("0"), self.defective - self.replaced)


def line_balances(po: PurchaseOrder) -> list[LineBalance]:
    balances = {ln.id: LineBalance(ln) for ln in po.lines}
    for grn in po.receipts:
        for gl in grn.lines:
            bal = balances[gl.order_line_id]
            bal.accepted += gl.accepted_quantity
            bal.defective += gl.defective_quantity
            if grn.is_replacement:
                bal.replaced += gl.received_quantity
    return list(balances.values())


def _pick_line(balances: list[LineBalance], material_id: str, replacement: bool) -> LineBalance:
    candidates = [b for b in balances if b.line.material_id == material_id]
    if not candidates:
        raise ValidationError(f"Material {material_id} is not on this purchase order", field="material_id")
    for b in candidates:
        if (b.replaceable if replacement else b.pending) > 0:
            return b
    return candidates[0]


def _receipt_lines(balances: list[LineBalance], items: list[dict], replacement: bool) -> list[GoodsReceiptLine]:
    if not items:
        raise ValidationError("A goods receipt needs at least one material", field="items")
    out = []
    for i, item in enumerate(items, start=1):
        received = as_decimal(item.get("received_quantity"), "received_quantity")
        defective = as_decimal(item.get("defective_quantity") or 0, "defective_quantity")
        if received <= 0:
            raise ValidationError(f"Line {i}: received_quantity must be greater than zero", field="received_quantity")
        if defective < 0 or defective > received:
            raise ValidationError(
                f"Line {i}: defective_quantity must be between 0 and the received quantity",
                field="defective_quantity",
            )
        bal = _pick_line(balances, item.get("material_id"), replacement)
        accepted = received - defective
        if replacement and received > bal.replaceable:
            raise DomainStateError(
                f"Line {i}: only {bal.replaceable:g} rejected units of this material await replacement",
                code="over_receipt",
                details={"material_id": bal.line.material_id, "replaceable": float(bal.replaceable)},
            )
        if accepted > bal.pending:
            raise DomainStateError(
                f"Line {i}: accepting {accepted:g} exceeds the {bal.pending:g} still pending",
                code="over_receipt",
                details={"material_id": bal.line.material_id, "pending": float(bal.pending)},
            )
        # Later items for the same line see this one
        bal.accepted += accepted
        bal.defective += defective
        if replacement:
            bal.replaced += received
        out.append(
            GoodsReceiptLine(
                order_line_id=bal.line.id,
                material_id=bal.line.material_id,
                received_quantity=received,
                defective_quantity=defective,
                accepted_quantity=accepted,
                remarks=item.get("remarks"),
            )
        )
    return out


def _arrival_event(po: PurchaseOrder) -> dict:
    return {
        "purchase_order_id": po.id,
        "po_number": po.po_number,
        "lines": [{"material_id": ln.material_id, "quantity": float(ln.quantity)} for ln in po.lines],
    }


def _book_receipt(
    db: Session,
    po: PurchaseOrder,
    balances: list[LineBalance],
    lines: list[GoodsReceiptLine],
    payload: dict,
    *,
    replacement: bool,
    actor: str | None,
) -> GoodsReceipt:
    """Persist a GRN, add accepted quantities to stock and move the order on. Commits."""
    received_date = payload.get("received_date") or date.today()
    pending = sum((b.pending for b in balances), Decimal("0"))
    target = PurchaseOrderStatus.ARRIVED if pending == 0 else PurchaseOrderStatus.PARTIALLY_RECEIVED
    PURCHASE_ORDER_FLOW.check(po.status, target.value)
    try:
        grn = GoodsReceipt(
            grn_number=next_document_number(db, GoodsReceipt.grn_number, "GRN", received_date),
            order_id=po.id,
            received_date=received_date,
            is_replacement=replacement,
            remarks=payload.get("remarks"),
            created_by=actor,
        )
        grn.lines = lines
        db.add(grn)
        for gl in lines:
            if gl.accepted_quantity > 0 and not receive_raw_material(db, material_id=gl.material_id, qty=gl.accepted_quantity):
                log.warning("%s: material %s vanished, nothing added", po.po_number, gl.material_id)
        po.status = target.value
        db.flush()
        publish(
            db,
            "purchasing.grn.received",
            {
                "purchase_order_id": po.id,
                "po_number": po.po_number,
                "grn_number": grn.grn_number,
                "is_replacement": replacement,
                "pending": float(pending),
                "lines": [
                    {"material_id": gl.material_id, "accepted": float(gl.accepted_quantity), "defective": float(gl.defective_quantity)}
                    for gl in lines
                ],
            },
        )
        if target == PurchaseOrderStatus.ARRIVED:
            po.received_at = utcnow()
            publish(db, "purchasing.order.arrived", _arrival_event(po))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(grn)
    db.refresh(po)
    log.info("%s %s booked against %s, %s pending", "replacement GRN" if replacement else "GRN", grn.grn_number, po.po_number, pending)

    if target == PurchaseOrderStatus.ARRIVED:
        emit(
            db,
            title="Purchase order received",
            message=f"{po.po_number} arrived in full; {len(po.lines)} material line(s) received",
            module="purchasing",
            type="po_received",
            entity_type="purchase_order",
            entity_id=po.id,
        )
    else:
        emit(
            db,
            title="Partial goods receipt",
            message=f"{grn.grn_number} against {po.po_number}; {pending:g} unit(s) still pending",
            module="purchasing",
            type="grn_partial",
            entity_type="purchase_order",
            entity_id=po.id,
        )
    return grn


def create_goods_receipt(db: Session, po_id: str, payload: dict, *, replacement: bool = False, actor: str | None = None) -> GoodsReceipt:
    po = get_purchase_order(db, po_id, lock=True)
    # Arrived and cancelled orders take no more goods
    PURCHASE_ORDER_FLOW.check(po.status, PurchaseOrderStatus.ARRIVED.value)
    balances = line_balances(po)
    lines = _receipt_lines(balances, payload.get("items") or [], replacement)
    return _book_receipt(db, po, balances, lines, payload, replacement=replacement, actor=actor)


def receive_purchase_order(db: Session, po_id: str, *, actor: str | None = None) -> PurchaseOrder:
    """Mark arrived by receiving everything still pending as one GRN."""
    po = get_purchase_order(db, po_id, lock=True)
    PURCHASE_ORDER_FLOW.check(po.status, PurchaseOrderStatus.ARRIVED.value)
    balances = line_balances(po)
    items = [{"material_id": b.line.material_id, "received_quantity": b.pending} for b in balances if b.pending > 0]
    lines = _receipt_lines(balances, items, replacement=False)
    _book_receipt(db, po, balances, lines, {"remarks": "Received in full"}, replacement=False, actor=actor)
    return po


def pending_quantities(po: PurchaseOrder) -> list[dict]:
    return [
        {
            "order_line_id": b.line.id,
            "material_id": b.line.material_id,
            "material_name": b.line.material.name if b.line.material else None,
            "ordered": float(b.line.quantity),
            "accepted": float(b.accepted),
            "defective": float(b.defective),
            "replaced": float(b.replaced),
            "awaiting_replacement": float(b.replaceable),
            "pending": float(b.pending),
        }
        for b in line_balances(po)
    ]


def set_purchase_order_status(db: Session, po_id: str, status: str, *, actor: str | None = None) -> PurchaseOrder:
    target = PURCHASE_ORDER_FLOW.parse(status)
    if target == PurchaseOrderStatus.ARRIVED.value:
        return receive_purchase_order(db, po_id, actor=actor)
    if target == PurchaseOrderStatus.PARTIALLY_RECEIVED.value:
        raise DomainStateError(
            "A purchase order becomes partially received by booking a goods receipt",
            code="status_requires_receipt",
            details={"status": target},
        )
    po = get_purchase_order(db, po_id, lock=True)
    PURCHASE_ORDER_FLOW.check(po.status, target)
    po.status = target
    db.commit()
    db.refresh(po)
    return po
