from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.db.models.common import utcnow
from app.events.outbox import OutboxEvent


def publish(db: Session, topic: str, payload: dict, *, available_at: datetime | None = None) -> OutboxEvent:
    """Stage an event in the transactional outbox.

    The row is only added to the session; it becomes visible when the caller
    commits the surrounding unit of work, so a rolled back mutation never
    leaks an event.
    """
    evt = OutboxEvent(
        topic=topic,
        payload=payload or {},
        available_at=available_at or utcnow(),
        delivered=False,
        attempt_count=0,
    )
    db.add(evt)
    return evt
