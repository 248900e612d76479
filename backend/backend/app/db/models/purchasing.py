"""
MODULE: PURCHASING
Suppliers, raw-material purchase orders and goods receipt notes. A goods
receipt is the only path that adds raw material stock.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Date, DateTime, Integer, Numeric, ForeignKey, JSON, Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt


class Supplier(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "purch_supplier"

    name: Mapped[str] = mapped_column(String(256), unique=True, nullable=False, index=True)
    contact_person: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class PurchaseOrder(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "purch_order"

    po_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    supplier_id: Mapped[str] = mapped_column(ForeignKey("purch_supplier.id"), nullable=False, index=True)
    order_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(24), default="ordered", nullable=False, index=True)  # ordered|partially_received|arrived|cancelled
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    supplier: Mapped[Supplier] = relationship()
    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="PurchaseOrderLine.line_number"
    )
    receipts: Mapped[list["GoodsReceipt"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="GoodsReceipt.created_at"
    )


class PurchaseOrderLine(Base, HasId, HasCreatedAt):
    __tablename__ = "purch_order_line"

    order_id: Mapped[str] = mapped_column(ForeignKey("purch_order.id"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    material_id: Mapped[str] = mapped_column(ForeignKey("inv_raw_material.id"), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)

    order: Mapped[PurchaseOrder] = relationship(back_populates="lines")
    receipt_lines: Mapped[list["GoodsReceiptLine"]] = relationship(back_populates="order_line")
    material: Mapped["RawMaterial"] = relationship()  # noqa: F821


class GoodsReceipt(Base, HasId, HasCreatedAt):
    """A delivery against a purchase order (GRN).

    Replacement receipts carry goods sent back for quantities an earlier
    receipt rejected as defective.
    """

    __tablename__ = "purch_grn"

    grn_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("purch_order.id"), nullable=False, index=True)
    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_replacement: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    order: Mapped[PurchaseOrder] = relationship(back_populates="receipts")
    lines: Mapped[list["GoodsReceiptLine"]] = relationship(
        back_populates="receipt", cascade="all, delete-orphan", order_by="GoodsReceiptLine.created_at"
    )


class GoodsReceiptLine(Base, HasId, HasCreatedAt):
    __tablename__ = "purch_grn_line"

    grn_id: Mapped[str] = mapped_column(ForeignKey("purch_grn.id"), nullable=False, index=True)
    order_line_id: Mapped[str] = mapped_column(ForeignKey("purch_order_line.id"), nullable=False, index=True)
    material_id: Mapped[str] = mapped_column(ForeignKey("inv_raw_material.id"), nullable=False, index=True)
    received_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    defective_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    # received - defective; the quantity added to raw material stock
    accepted_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    receipt: Mapped[GoodsReceipt] = relationship(back_populates="lines")
    order_line: Mapped[PurchaseOrderLine] = relationship(back_populates="receipt_lines")
