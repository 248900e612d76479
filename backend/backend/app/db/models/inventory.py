"""
MODULE: INVENTORY
Raw material stock and finished goods stock. Both quantities stay non-negative;
every mutation goes through services.inventory.ledger.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import String, Numeric, ForeignKey, JSON, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt


class RawMaterial(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "inv_raw_material"

    material_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    uom: Mapped[str] = mapped_column(String(16), default="EA", nullable=False)
    current_stock: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    minimum_stock: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_inv_raw_material_stock_nonneg"),
    )


class FinishedProduct(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "inv_finished_product"

    product_id: Mapped[str] = mapped_column(ForeignKey("catalog_product.id"), unique=True, nullable=False, index=True)
    quantity_available: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)
    storage_location: Mapped[str | None] = mapped_column(String(128), nullable=True)

    product: Mapped["Product"] = relationship()  # noqa: F821

    __table_args__ = (
        CheckConstraint("quantity_available >= 0", name="ck_inv_finished_product_qty_nonneg"),
    )
