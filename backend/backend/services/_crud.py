from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError

T = TypeVar("T")


def commit_refresh(db: Session, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


def get_or_404(db: Session, model: type[T], obj_id: str, label: str | None = None) -> T:
    obj = db.get(model, obj_id)
    if obj is None:
        raise NotFoundError(label or model.__name__, obj_id)
    return obj


def as_decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)


def num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def next_document_number(db: Session, column, prefix: str, on: date | None = None) -> str:
    """Sequential per calendar month: <prefix>-YYYYMM-NNNN."""
    on = on or date.today()
    stem = f"{prefix}-{on:%Y%m}-"
    latest = db.query(func.max(column)).filter(column.like(f"{stem}%")).scalar()
    seq = 1
    if latest:
        tail = latest[len(stem):]
        seq = int(tail) + 1 if tail.isdigit() else 1
    return f"{stem}{seq:04d}"
