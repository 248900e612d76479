"""
MODULE: SALES
Sales orders, their lines, and the partial-fulfillment split between
finished-goods stock and manufacturing batches.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import String, Date, Integer, Numeric, ForeignKey, JSON, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt


class SalesOrder(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "sales_order"

    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    order_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    delivery_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    # pending|confirmed|awaiting_materials|partially_in_stock|in_production|delivered|completed|cancelled
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False, index=True)

    # Percentages, 0-100
    discount: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0, nullable=False)
    gst: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=18, nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    lines: Mapped[list["SalesOrderLine"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="SalesOrderLine.line_number"
    )
    fulfillments: Mapped[list["PartialFulfillment"]] = relationship(
        back_populates="order", cascade="all, delete-orphan"
    )


class SalesOrderLine(Base, HasId, HasCreatedAt):
    __tablename__ = "sales_order_line"

    order_id: Mapped[str] = mapped_column(ForeignKey("sales_order.id"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    product_id: Mapped[str] = mapped_column(ForeignKey("catalog_product.id"), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    order: Mapped[SalesOrder] = relationship(back_populates="lines")
    product: Mapped["Product"] = relationship()  # noqa: F821


class PartialFulfillment(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """How much of a product line ships from stock and how much is being built."""
    __tablename__ = "sales_partial_fulfillment"

    order_id: Mapped[str] = mapped_column(ForeignKey("sales_order.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("catalog_product.id"), nullable=False, index=True)
    total_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    in_stock_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    manufacturing_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    # Taken from finished goods at confirmation; returned if the order is cancelled
    reserved_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    # Received from completed batches and still sitting in finished goods until delivery
    manufactured_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)

    order: Mapped[SalesOrder] = relationship(back_populates="fulfillments")
    batch_links: Mapped[list["FulfillmentBatchLink"]] = relationship(
        back_populates="fulfillment", cascade="all, delete-orphan"
    )


class FulfillmentBatchLink(Base, HasId, HasCreatedAt):
    __tablename__ = "sales_fulfillment_batch"

    fulfillment_id: Mapped[str] = mapped_column(ForeignKey("sales_partial_fulfillment.id"), nullable=False, index=True)
    batch_id: Mapped[str] = mapped_column(ForeignKey("mfg_batch.id"), nullable=False, index=True)

    fulfillment: Mapped[PartialFulfillment] = relationship(back_populates="batch_links")


Index("uq_sales_fulfillment_batch", FulfillmentBatchLink.fulfillment_id, FulfillmentBatchLink.batch_id, unique=True)
