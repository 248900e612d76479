from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.security import require_access
from app.db.session import get_db
from app.events import bus
from app.events.outbox import OutboxEvent
from app.events.subscriptions import EventSubscription
from services._crud import iso


router = APIRouter(
    prefix="/admin/events",
    tags=["admin_events"],
    dependencies=[Depends(require_access("/admin/events"))],
)


@router.get("/subscriptions")
def list_subscriptions(db: Session = Depends(get_db)):
    subs = db.query(EventSubscription).order_by(EventSubscription.created_at.desc()).all()
    return [
        {
            "id": s.id,
            "name": s.name,
            "topic_pattern": s.topic_pattern,
            "target_url": s.target_url,
            "headers": s.headers or {},
            "is_active": bool(s.is_active),
            "failure_count": int(s.failure_count or 0),
            "last_error": s.last_error,
            "last_delivered_at": iso(s.last_delivered_at),
            "created_at": iso(s.created_at),
        }
        for s in subs
    ]


@router.post("/subscriptions", status_code=201)
def create_subscription(payload: dict, db: Session = Depends(get_db)):
    name = (payload or {}).get("name") or "subscription"
    topic_pattern = (payload or {}).get("topic_pattern")
    target_url = (payload or {}).get("target_url")
    headers = (payload or {}).get("headers") or {}

    if not topic_pattern or not target_url:
        raise HTTPException(422, "topic_pattern and target_url are required")
    if not str(target_url).startswith(("http://", "https://")):
        raise HTTPException(422, "target_url must be an http(s) URL")

    s = EventSubscription(
        name=name,
        topic_pattern=str(topic_pattern),
        target_url=str(target_url),
        headers=headers,
        is_active=bool((payload or {}).get("is_active", True)),
        last_error=None,
        failure_count=0,
        last_delivered_at=None,
    )
    db.add(s)
    db.commit()
    db.refresh(s)
    return {"ok": True, "id": s.id}


@router.post("/subscriptions/{sub_id}/toggle")
def toggle_subscription(sub_id: str, payload: dict | None = None, db: Session = Depends(get_db)):
    s = db.query(EventSubscription).filter(EventSubscription.id == sub_id).first()
    if not s:
        raise HTTPException(404, "Unknown subscription")
    s.is_active = bool((payload or {}).get("is_active", not bool(s.is_active)))
    db.commit()
    return {"ok": True, "id": s.id, "is_active": bool(s.is_active)}


@router.delete("/subscriptions/{sub_id}")
def delete_subscription(sub_id: str, db: Session = Depends(get_db)):
    s = db.query(EventSubscription).filter(EventSubscription.id == sub_id).first()
    if not s:
        return {"ok": True, "deleted": False}
    db.delete(s)
    db.commit()
    return {"ok": True, "deleted": True}


@router.get("/outbox")
def list_outbox(db: Session = Depends(get_db), topic: str | None = None, pending_only: bool = False, limit: int = 100):
    q = db.query(OutboxEvent)
    if topic:
        q = q.filter(OutboxEvent.topic == topic)
    if pending_only:
        q = q.filter(OutboxEvent.delivered == False)  # noqa: E712
    return [
        {
            "id": e.id,
            "topic": e.topic,
            "payload": e.payload or {},
            "delivered": bool(e.delivered),
            "attempt_count": e.attempt_count,
            "last_error": e.last_error,
            "available_at": iso(e.available_at),
            "created_at": iso(e.created_at),
        }
        for e in q.order_by(OutboxEvent.created_at.desc()).limit(limit).all()
    ]


@router.post("/publish")
def publish_event(payload: dict, db: Session = Depends(get_db)):
    """Test publish endpoint; services publish inside their own transaction."""
    topic = (payload or {}).get("topic")
    event_payload = (payload or {}).get("payload") or {}
    if not topic:
        raise HTTPException(422, "topic is required")
    evt = bus.publish(db, str(topic), dict(event_payload))
    db.commit()
    db.refresh(evt)
    return {"ok": True, "event_id": evt.id, "topic": evt.topic}
