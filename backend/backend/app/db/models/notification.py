from __future__ import annotations

from sqlalchemy import String, ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt


class Notification(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """In-app inbox entry. A null user_id is a broadcast seen by every user."""
    __tablename__ = "sys_notification"

    user_id: Mapped[str | None] = mapped_column(ForeignKey("auth_user.id"), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    module: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # sales|manufacturing|inventory|purchasing|system
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # order_confirmed|batch_created|stage_completed|low_stock|...
    priority: Mapped[str] = mapped_column(String(8), default="normal", nullable=False)  # high|normal|low
    status: Mapped[str] = mapped_column(String(8), default="unread", nullable=False, index=True)  # unread|read
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)


Index("ix_sys_notification_user_status", Notification.user_id, Notification.status)
