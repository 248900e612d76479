from __future__ import annotations

import logging

from sqlalchemy import case, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.db.models.inventory import RawMaterial
from app.db.models.notification import Notification

log = logging.getLogger(__name__)

PRIORITIES = ("high", "normal", "low")

_priority_rank = case(
    (Notification.priority == "high", 0),
    (Notification.priority == "normal", 1),
    else_=2,
)


def emit(
    db: Session,
    *,
    title: str,
    message: str,
    module: str,
    type: str,
    priority: str = "normal",
    user_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> Notification | None:
    """Write one inbox notification in its own transaction.

    Call after the business transaction committed. Failures are logged and
    swallowed so a notification can never undo the change it reports.
    """
    try:
        n = Notification(
            user_id=user_id,
            title=title,
            message=message,
            module=module,
            type=type,
            priority=priority if priority in PRIORITIES else "normal",
            status="unread",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.add(n)
        db.commit()
        return n
    except SQLAlchemyError:
        db.rollback()
        log.exception("failed to emit notification %r", title)
        return None


def _visible_to(user_id: str):
    return or_(Notification.user_id == user_id, Notification.user_id.is_(None))


def list_for_user(
    db: Session,
    user_id: str,
    *,
    module: str | None = None,
    type: str | None = None,
    status: str | None = None,
    priority: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Notification]:
    q = db.query(Notification).filter(_visible_to(user_id))
    if module:
        q = q.filter(Notification.module == module)
    if type:
        q = q.filter(Notification.type == type)
    if status:
        q = q.filter(Notification.status == status)
    if priority:
        q = q.filter(Notification.priority == priority)
    return q.order_by(_priority_rank, Notification.created_at.desc()).offset(offset).limit(limit).all()


def unread_count(db: Session, user_id: str) -> int:
    return db.query(Notification).filter(_visible_to(user_id), Notification.status == "unread").count()


def get_visible(db: Session, notification_id: str, user_id: str) -> Notification:
    n = db.query(Notification).filter(Notification.id == notification_id, _visible_to(user_id)).first()
    if not n:
        raise NotFoundError("Notification", notification_id)
    return n


def mark_read(db: Session, notification_id: str, user_id: str) -> Notification:
    n = get_visible(db, notification_id, user_id)
    n.status = "read"
    db.commit()
    return n


def mark_all_read(db: Session, user_id: str) -> int:
    updated = (
        db.query(Notification)
        .filter(_visible_to(user_id), Notification.status == "unread")
        .update({Notification.status: "read"}, synchronize_session=False)
    )
    db.commit()
    return updated


def delete(db: Session, notification_id: str, user_id: str) -> None:
    n = get_visible(db, notification_id, user_id)
    db.delete(n)
    db.commit()


def low_stock_message(material: RawMaterial) -> str:
    return (
        f"{material.name} ({material.material_code}) is at {material.current_stock} {material.uom}, "
        f"minimum is {material.minimum_stock} {material.uom}"
    )


def check_stock_levels(db: Session) -> list[Notification]:
    """One high-priority notification per material at or below minimum stock.

    Materials that already have an unread low-stock notification are skipped.
    """
    low = (
        db.query(RawMaterial)
        .filter(RawMaterial.current_stock <= RawMaterial.minimum_stock)
        .order_by(RawMaterial.name.asc())
        .all()
    )
    created: list[Notification] = []
    for m in low:
        already = (
            db.query(Notification.id)
            .filter(
                Notification.type == "low_stock",
                Notification.entity_id == m.id,
                Notification.status == "unread",
            )
            .first()
        )
        if already:
            continue
        n = emit(
            db,
            title="Low stock alert",
            message=low_stock_message(m),
            module="inventory",
            type="low_stock",
            priority="high",
            entity_type="raw_material",
            entity_id=m.id,
        )
        if n is not None:
            created.append(n)
    return created
