"""
MODULE: PRODUCT CATALOG
Products, their bill of materials and sub-component routings.
Read-only to the order and manufacturing flows.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Integer, Numeric, ForeignKey, JSON, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt


class Product(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "catalog_product"

    product_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)

    # Ordered manufacturing stage names; empty means "derive from sub-components or defaults"
    stages: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    bom_lines: Mapped[list["BOMLine"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="BOMLine.created_at"
    )
    sub_components: Mapped[list["SubComponent"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="SubComponent.sequence"
    )


class SubComponent(Base, HasId, HasCreatedAt):
    __tablename__ = "catalog_sub_component"

    product_id: Mapped[str] = mapped_column(ForeignKey("catalog_product.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stages: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    product: Mapped[Product] = relationship(back_populates="sub_components")


class BOMLine(Base, HasId, HasCreatedAt):
    """Material consumed per unit of product; optionally attributed to a sub-component."""
    __tablename__ = "catalog_bom_line"

    product_id: Mapped[str] = mapped_column(ForeignKey("catalog_product.id"), nullable=False, index=True)
    sub_component_id: Mapped[str | None] = mapped_column(ForeignKey("catalog_sub_component.id"), nullable=True)
    material_id: Mapped[str] = mapped_column(ForeignKey("inv_raw_material.id"), nullable=False, index=True)
    quantity_required: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    uom: Mapped[str] = mapped_column(String(16), default="EA", nullable=False)

    product: Mapped[Product] = relationship(back_populates="bom_lines")
    sub_component: Mapped[Optional[SubComponent]] = relationship()
    material: Mapped["RawMaterial"] = relationship()  # noqa: F821


Index("ix_catalog_bom_line_product_material", BOMLine.product_id, BOMLine.material_id)
