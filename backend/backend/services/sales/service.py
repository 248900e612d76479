"""
Sales order intake and the order-side half of the fulfillment flow.

confirm_order runs the availability resolver against finished goods, checks
material feasibility for whatever must be built, and either ships from stock,
parks the order awaiting materials, or reserves stock and opens batches.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ConcurrencyError, DomainStateError, NotFoundError, ValidationError
from app.core.states import ORDER_FLOW, OrderStatus
from app.db.models.manufacturing import ManufacturingBatch
from app.db.models.sales import FulfillmentBatchLink, PartialFulfillment, SalesOrder, SalesOrderLine
from app.events.bus import publish
from services._crud import as_decimal, next_document_number
from services.catalog.service import get_product, product_bom
from services.inventory.ledger import finished_stock, raw_stock, receive_finished_goods, take_finished_goods
from services.manufacturing.planning import Availability, material_requirements, resolve_availability, shortages_for
from services.manufacturing.service import create_batch, notify_batch_created, notify_shortage, shortage_details
from services.notifications.service import emit

log = logging.getLogger(__name__)

DEFAULT_GST = Decimal(os.getenv("DEFAULT_GST", "18"))

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Outcomes of the availability resolver; only confirm_order and start_production reach them
RESOLVED_STATUSES = {OrderStatus.PARTIALLY_IN_STOCK.value, OrderStatus.AWAITING_MATERIALS.value}


@dataclass(frozen=True)
class _Demand:
    product_id: str
    quantity: Decimal


def get_order(db: Session, order_id: str, *, lock: bool = False) -> SalesOrder:
    q = db.query(SalesOrder).filter(SalesOrder.id == order_id)
    if lock:
        q = q.with_for_update()
    order = q.first()
    if not order:
        raise NotFoundError("SalesOrder", order_id)
    return order


def _percent(value, field: str, default: Decimal) -> Decimal:
    if value is None:
        return default
    pct = as_decimal(value, field)
    if pct < 0 or pct > HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100", field=field)
    return pct


def _validated_lines(db: Session, lines: list[dict]) -> list[SalesOrderLine]:
    if not lines:
        raise ValidationError("An order needs at least one line", field="items")
    out = []
    for i, ln in enumerate(lines, start=1):
        product_id = ln.get("product_id")
        if not product_id:
            raise ValidationError(f"Line {i}: product_id is required", field="product_id")
        product = get_product(db, product_id)
        qty = as_decimal(ln.get("quantity"), "quantity")
        if qty <= 0:
            raise ValidationError(f"Line {i}: quantity must be greater than zero", field="quantity")
        price = ln.get("unit_price")
        price = product.unit_price if price is None else as_decimal(price, "unit_price")
        if price <= 0:
            raise ValidationError(f"Line {i}: unit_price must be greater than zero", field="unit_price")
        out.append(SalesOrderLine(line_number=i, product_id=product.id, quantity=qty, unit_price=price))
    return out


def compute_totals(lines: list[SalesOrderLine], discount: Decimal, gst: Decimal) -> tuple[Decimal, Decimal]:
    """(subtotal, total): total = (subtotal - discount%) + gst% on the discounted amount."""
    subtotal = sum((ln.quantity * ln.unit_price for ln in lines), Decimal("0"))
    taxable = subtotal - subtotal * discount / HUNDRED
    total = taxable + taxable * gst / HUNDRED
    return subtotal.quantize(CENT, ROUND_HALF_UP), total.quantize(CENT, ROUND_HALF_UP)


def create_order(db: Session, payload: dict, *, actor: str | None = None) -> SalesOrder:
    customer = (payload.get("customer_name") or "").strip()
    if not customer:
        raise ValidationError("customer_name is required", field="customer_name")
    lines = _validated_lines(db, payload.get("items") or [])
    discount = _percent(payload.get("discount"), "discount", Decimal("0"))
    gst = _percent(payload.get("gst"), "gst", DEFAULT_GST)
    subtotal, total = compute_totals(lines, discount, gst)
    order_date = payload.get("order_date") or date.today()

    order = SalesOrder(
        order_number=payload.get("order_number") or next_document_number(db, SalesOrder.order_number, "SO", order_date),
        order_date=order_date,
        customer_name=customer,
        customer_email=payload.get("customer_email"),
        customer_phone=payload.get("customer_phone"),
        delivery_address=payload.get("delivery_address"),
        status=OrderStatus.PENDING.value,
        discount=discount,
        gst=gst,
        subtotal=subtotal,
        total_amount=total,
        notes=payload.get("notes"),
        created_by=actor,
        meta={},
    )
    order.lines = lines
    db.add(order)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DomainStateError(f"Order number {order.order_number} already exists", code="duplicate_order_number")
    db.refresh(order)
    log.info("sales order %s created for %s total=%s", order.order_number, customer, total)
    emit(
        db,
        title="New sales order",
        message=f"Order {order.order_number} from {customer} for {total}",
        module="sales",
        type="order_created",
        entity_type="sales_order",
        entity_id=order.id,
    )
    return order


def update_order(db: Session, order_id: str, payload: dict) -> SalesOrder:
    order = get_order(db, order_id, lock=True)
    if order.status != OrderStatus.PENDING.value:
        raise DomainStateError(f"Order {order.order_number} is {order.status}; only pending orders can be edited")
    if "customer_name" in payload:
        customer = (payload.get("customer_name") or "").strip()
        if not customer:
            raise ValidationError("customer_name is required", field="customer_name")
        order.customer_name = customer
    for field in ("customer_email", "customer_phone", "delivery_address", "notes"):
        if field in payload:
            setattr(order, field, payload[field])
    if payload.get("order_date"):
        order.order_date = payload["order_date"]
    if "items" in payload:
        order.lines = _validated_lines(db, payload.get("items") or [])
    order.discount = _percent(payload.get("discount", order.discount), "discount", Decimal("0"))
    order.gst = _percent(payload.get("gst", order.gst), "gst", DEFAULT_GST)
    order.subtotal, order.total_amount = compute_totals(order.lines, order.discount, order.gst)
    db.commit()
    db.refresh(order)
    return order


def delete_order(db: Session, order_id: str) -> None:
    order = get_order(db, order_id, lock=True)
    if ORDER_FLOW.is_terminal(order.status):
        raise DomainStateError(f"Order {order.order_number} is {order.status} and cannot be deleted")
    has_batches = db.query(ManufacturingBatch.id).filter(ManufacturingBatch.sales_order_id == order.id).first()
    if has_batches:
        raise DomainStateError(f"Order {order.order_number} has manufacturing batches and cannot be deleted")
    try:
        _release_reserved(db, order)
        db.delete(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("sales order %s deleted", order.order_number)


def _demand(order: SalesOrder) -> list[_Demand]:
    """Order lines summed per product, in first-seen order."""
    totals: dict[str, Decimal] = {}
    for ln in order.lines:
        totals[ln.product_id] = totals.get(ln.product_id, Decimal("0")) + ln.quantity
    return [_Demand(pid, qty) for pid, qty in totals.items()]


def _material_shortages(db: Session, builds: list[tuple[str, Decimal]]) -> list[dict]:
    requirements: dict[str, Decimal] = {}
    for product_id, qty in builds:
        for mid, need in material_requirements(product_bom(get_product(db, product_id)), qty).items():
            requirements[mid] = requirements.get(mid, Decimal("0")) + need
    missing = shortages_for(requirements, raw_stock(db, requirements))
    return shortage_details(db, missing) if missing else []


def _replace_fulfillments(order: SalesOrder, availability: list[Availability]) -> dict[str, PartialFulfillment]:
    order.fulfillments.clear()
    out = {}
    for a in availability:
        pf = PartialFulfillment(
            product_id=a.product_id,
            total_quantity=a.requested,
            in_stock_quantity=a.available,
            manufacturing_quantity=a.to_manufacture,
            reserved_quantity=Decimal("0"),
            manufactured_quantity=Decimal("0"),
        )
        order.fulfillments.append(pf)
        out[a.product_id] = pf
    return out


def _set_status(order: SalesOrder, target: OrderStatus) -> None:
    ORDER_FLOW.check(order.status, target.value)
    order.status = target.value


def _order_event(order: SalesOrder, **extra) -> dict:
    return {"order_id": order.id, "order_number": order.order_number, "status": order.status, **extra}


def _commit(db: Session, order_id: str) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConcurrencyError("SalesOrder", order_id) from exc


def _notify_status(db: Session, order: SalesOrder, message: str, priority: str = "normal") -> None:
    emit(
        db,
        title=f"Order {order.status.replace('_', ' ')}",
        message=message,
        module="sales",
        type="order_status",
        priority=priority,
        entity_type="sales_order",
        entity_id=order.id,
    )


def _park_awaiting_materials(db: Session, order: SalesOrder, missing: list[dict]) -> SalesOrder:
    _set_status(order, OrderStatus.AWAITING_MATERIALS)
    publish(db, "sales.order.awaiting_materials", _order_event(order, shortages=missing))
    _commit(db, order.id)
    db.refresh(order)
    log.info("order %s awaiting materials: %d short", order.order_number, len(missing))
    notify_shortage(db, subject=f"Order {order.order_number}", missing=missing, entity_type="sales_order", entity_id=order.id)
    return order


def confirm_order(db: Session, order_id: str, *, actor: str | None = None) -> SalesOrder:
    order = get_order(db, order_id, lock=True)

    split = order.status in (OrderStatus.PARTIALLY_IN_STOCK.value, OrderStatus.IN_PRODUCTION.value)
    if split and order.fulfillments:
        # Already split; confirmation only closes out an order with nothing left to build
        if any(pf.manufacturing_quantity > 0 for pf in order.fulfillments):
            raise DomainStateError(
                f"Order {order.order_number} still has quantities in manufacturing",
                code="manufacturing_pending",
            )
        _set_status(order, OrderStatus.CONFIRMED)
        _commit(db, order.id)
        db.refresh(order)
        return order

    ORDER_FLOW.check(order.status, OrderStatus.CONFIRMED.value)

    demand = _demand(order)
    stock = finished_stock(db, [d.product_id for d in demand])
    availability = resolve_availability(demand, stock)
    to_build = [(a.product_id, a.to_manufacture) for a in availability if a.to_manufacture > 0]

    missing = _material_shortages(db, to_build) if to_build else []
    fulfillments = _replace_fulfillments(order, availability)
    if missing:
        return _park_awaiting_materials(db, order, missing)

    batches = []
    try:
        for a in availability:
            if a.available > 0:
                take_finished_goods(db, product_id=a.product_id, qty=a.available)
                fulfillments[a.product_id].reserved_quantity = a.available
        for product_id, qty in to_build:
            batch = create_batch(db, product_id=product_id, quantity=qty, sales_order_id=order.id, actor=actor)
            db.add(FulfillmentBatchLink(fulfillment=fulfillments[product_id], batch_id=batch.id))
            batches.append(batch)
        _set_status(order, OrderStatus.PARTIALLY_IN_STOCK if to_build else OrderStatus.CONFIRMED)
        publish(db, "sales.order.confirmed", _order_event(order, batch_ids=[b.id for b in batches]))
        _commit(db, order.id)
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    log.info("order %s confirmed as %s with %d batches", order.order_number, order.status, len(batches))
    if batches:
        _notify_status(db, order, f"Order {order.order_number} ships partly from stock; {len(batches)} batch(es) started")
        for batch in batches:
            notify_batch_created(db, batch)
    else:
        _notify_status(db, order, f"Order {order.order_number} confirmed from stock", priority="high")
    return order


def start_production(db: Session, order_id: str, *, actor: str | None = None) -> SalesOrder:
    """Build the whole order instead of shipping any of it from stock."""
    order = get_order(db, order_id, lock=True)
    ORDER_FLOW.check(order.status, OrderStatus.IN_PRODUCTION.value)

    if order.fulfillments:
        # Batches already exist from a partial confirmation
        _set_status(order, OrderStatus.IN_PRODUCTION)
        _commit(db, order.id)
        db.refresh(order)
        return order

    demand = _demand(order)
    availability = [Availability(d.product_id, d.quantity, Decimal("0"), d.quantity) for d in demand]
    missing = _material_shortages(db, [(d.product_id, d.quantity) for d in demand])
    fulfillments = _replace_fulfillments(order, availability)
    if missing:
        return _park_awaiting_materials(db, order, missing)

    batches = []
    try:
        for d in demand:
            batch = create_batch(db, product_id=d.product_id, quantity=d.quantity, sales_order_id=order.id, actor=actor)
            db.add(FulfillmentBatchLink(fulfillment=fulfillments[d.product_id], batch_id=batch.id))
            batches.append(batch)
        _set_status(order, OrderStatus.IN_PRODUCTION)
        publish(db, "sales.order.in_production", _order_event(order, batch_ids=[b.id for b in batches]))
        _commit(db, order.id)
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    _notify_status(db, order, f"Order {order.order_number} sent to production in {len(batches)} batch(es)")
    for batch in batches:
        notify_batch_created(db, batch)
    return order


def settle_batch_completion(db: Session, batch: ManufacturingBatch) -> SalesOrder | None:
    """Move a completed batch's quantity from manufacturing to in-stock on its order.

    Runs inside the stage engine's transaction. Returns the order when its
    status changed.
    """
    fulfillments = (
        db.query(PartialFulfillment)
        .join(FulfillmentBatchLink, FulfillmentBatchLink.fulfillment_id == PartialFulfillment.id)
        .filter(FulfillmentBatchLink.batch_id == batch.id)
        .all()
    )
    if not fulfillments and batch.sales_order_id:
        fulfillments = (
            db.query(PartialFulfillment)
            .filter(
                PartialFulfillment.order_id == batch.sales_order_id,
                PartialFulfillment.product_id == batch.product_id,
                PartialFulfillment.manufacturing_quantity > 0,
            )
            .limit(1)
            .all()
        )
    if not fulfillments:
        return None

    order = fulfillments[0].order
    if ORDER_FLOW.is_terminal(order.status):
        log.info("batch %s completed for closed order %s", batch.batch_number, order.order_number)
        return None

    remaining = batch.quantity
    for pf in fulfillments:
        moved = min(remaining, pf.manufacturing_quantity)
        pf.manufacturing_quantity -= moved
        pf.in_stock_quantity += moved
        pf.manufactured_quantity += moved
        remaining -= moved

    outstanding = any(pf.manufacturing_quantity > 0 for pf in order.fulfillments)
    target = OrderStatus.PARTIALLY_IN_STOCK if outstanding else OrderStatus.CONFIRMED
    if order.status == target.value or not ORDER_FLOW.can(order.status, target.value):
        return None
    order.status = target.value
    publish(db, "sales.order.status_changed", _order_event(order, batch_id=batch.id))
    return order


def _release_reserved(db: Session, order: SalesOrder) -> None:
    for pf in order.fulfillments:
        if pf.reserved_quantity > 0:
            receive_finished_goods(db, product_id=pf.product_id, qty=pf.reserved_quantity)
            pf.reserved_quantity = Decimal("0")


def deliver_order(db: Session, order_id: str) -> SalesOrder:
    """Ship the order: manufactured quantities leave finished goods now."""
    order = get_order(db, order_id, lock=True)
    try:
        _set_status(order, OrderStatus.DELIVERED)
        for pf in order.fulfillments:
            if pf.manufactured_quantity > 0:
                take_finished_goods(db, product_id=pf.product_id, qty=pf.manufactured_quantity)
        publish(db, "sales.order.delivered", _order_event(order))
        _commit(db, order.id)
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return order


def cancel_order(db: Session, order_id: str) -> SalesOrder:
    """Cancel and return reserved stock. Linked batches keep running."""
    order = get_order(db, order_id, lock=True)
    try:
        _set_status(order, OrderStatus.CANCELLED)
        _release_reserved(db, order)
        publish(db, "sales.order.cancelled", _order_event(order))
        _commit(db, order.id)
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    _notify_status(db, order, f"Order {order.order_number} was cancelled")
    return order


def set_order_status(db: Session, order_id: str, status: str, *, actor: str | None = None) -> SalesOrder:
    target = ORDER_FLOW.parse(status)
    if target in RESOLVED_STATUSES:
        raise DomainStateError(
            f"Status '{target}' is decided by order confirmation and cannot be set directly",
            code="status_requires_confirmation",
            details={"status": target},
        )
    if target == OrderStatus.CONFIRMED.value:
        return confirm_order(db, order_id, actor=actor)
    if target == OrderStatus.IN_PRODUCTION.value:
        return start_production(db, order_id, actor=actor)
    if target == OrderStatus.DELIVERED.value:
        return deliver_order(db, order_id)
    if target == OrderStatus.CANCELLED.value:
        return cancel_order(db, order_id)

    order = get_order(db, order_id, lock=True)
    ORDER_FLOW.check(order.status, target)
    order.status = target
    _commit(db, order.id)
    db.refresh(order)
    return order
