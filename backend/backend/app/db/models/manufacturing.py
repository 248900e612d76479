"""
MODULE: MANUFACTURING
Production batches, their per-stage workflow steps and the one-shot
inventory transition log.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Numeric, ForeignKey, JSON, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt


class ManufacturingBatch(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "mfg_batch"

    batch_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("catalog_product.id"), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)

    # Stage list is frozen at creation; completion dates map stage -> ISO timestamp or None
    stages: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    stage_completion_dates: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    current_stage: Mapped[str] = mapped_column(String(128), nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(16), default="in_progress", nullable=False, index=True)  # in_progress|completed|cancelled

    sales_order_id: Mapped[str | None] = mapped_column(ForeignKey("sales_order.id"), nullable=True, index=True)
    raw_materials_used: Mapped[list | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    estimated_completion_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    product: Mapped["Product"] = relationship()  # noqa: F821
    steps: Mapped[list["WorkflowStep"]] = relationship(
        back_populates="batch", cascade="all, delete-orphan", order_by="WorkflowStep.sequence"
    )

    __mapper_args__ = {"version_id_col": version}


class WorkflowStep(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "mfg_workflow_step"

    batch_id: Mapped[str] = mapped_column(ForeignKey("mfg_batch.id"), nullable=False, index=True)
    step_name: Mapped[str] = mapped_column(String(128), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="not_started", nullable=False)  # not_started|in_progress|completed|on_hold|cancelled
    assigned_team: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sub_component_id: Mapped[str | None] = mapped_column(ForeignKey("catalog_sub_component.id"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    batch: Mapped[ManufacturingBatch] = relationship(back_populates="steps")
    sub_component: Mapped[Optional["SubComponent"]] = relationship()  # noqa: F821


Index("uq_mfg_workflow_step_batch_seq", WorkflowStep.batch_id, WorkflowStep.sequence, unique=True)


class BatchTransition(Base, HasId, HasCreatedAt):
    """One row per inventory side effect already applied to a batch."""
    __tablename__ = "mfg_batch_transition"

    batch_id: Mapped[str] = mapped_column(ForeignKey("mfg_batch.id"), nullable=False, index=True)
    transition: Mapped[str] = mapped_column(String(32), nullable=False)  # MATERIALS_ISSUED|FG_RECEIVED
    actor: Mapped[str | None] = mapped_column(String(256), nullable=True)
    detail: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


Index("uq_mfg_batch_transition", BatchTransition.batch_id, BatchTransition.transition, unique=True)
