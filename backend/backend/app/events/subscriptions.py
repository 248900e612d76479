from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasCreatedAt, HasId


class EventSubscription(Base, HasId, HasCreatedAt):
    """A webhook that receives outbox events whose topic matches `topic_pattern`.

    Topics published by the services:
      manufacturing.batch.{created,completed,cancelled}, manufacturing.stage.advanced
      sales.order.{confirmed,awaiting_materials,in_production,status_changed,delivered,cancelled}
      purchasing.grn.received, purchasing.order.arrived

    A pattern is an exact topic ("purchasing.order.arrived"), a prefix ending
    in a dot ("sales.order.") or the same prefix written as a wildcard
    ("sales.order.*"). A shop-floor display would subscribe to
    "manufacturing.*"; the purchasing desk to "purchasing.". Failures are
    counted here and retried by the dispatcher with backoff.
    """

    __tablename__ = "event_subscription"

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    topic_pattern: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    headers: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


Index("ix_event_sub_active", EventSubscription.is_active, EventSubscription.topic_pattern)
