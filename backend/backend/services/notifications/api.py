from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.security import Principal, require_access, require_user
from app.db.models.notification import Notification
from app.db.session import get_db
from services._crud import iso
from services.notifications import service

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _out(n: Notification) -> dict:
    return {
        "id": n.id,
        "user_id": n.user_id,
        "title": n.title,
        "message": n.message,
        "module": n.module,
        "type": n.type,
        "priority": n.priority,
        "status": n.status,
        "entity_type": n.entity_type,
        "entity_id": n.entity_id,
        "created_at": iso(n.created_at),
    }


@router.get("")
def list_notifications(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_user),
    module: str | None = None,
    type: str | None = None,
    status: str | None = None,
    priority: str | None = None,
    limit: int = 100,
    offset: int = 0,
):
    rows = service.list_for_user(
        db,
        principal.user_id,
        module=module,
        type=type,
        status=status,
        priority=priority,
        limit=limit,
        offset=offset,
    )
    return [_out(n) for n in rows]


@router.get("/unread-count")
def unread_count(db: Session = Depends(get_db), principal: Principal = Depends(require_user)):
    return {"count": service.unread_count(db, principal.user_id)}


@router.put("/read-all")
def mark_all_read(db: Session = Depends(get_db), principal: Principal = Depends(require_user)):
    return {"updated": service.mark_all_read(db, principal.user_id)}


@router.put("/{notification_id}/read")
def mark_read(notification_id: str, db: Session = Depends(get_db), principal: Principal = Depends(require_user)):
    return _out(service.mark_read(db, notification_id, principal.user_id))


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, db: Session = Depends(get_db), principal: Principal = Depends(require_user)):
    service.delete(db, notification_id, principal.user_id)
    return {"ok": True}


@router.post("/check-stock-levels")
def check_stock_levels(db: Session = Depends(get_db), _=Depends(require_access("/inventory"))):
    created = service.check_stock_levels(db)
    return {"created": len(created), "notifications": [_out(n) for n in created]}
