"""
Domain errors raised by the service layer.

Routers let these propagate; main.py maps each family onto an HTTP status and
a `{"error": code, "detail": message, "details": {...}}` body.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    status_code = 400
    code = "domain_error"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, "details": self.details}


class ValidationError(DomainError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, details: dict[str, Any] | None = None):
        extra = dict(details or {})
        if field:
            extra["field"] = field
        super().__init__(message, details=extra)


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} '{entity_id}' not found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )


class AuthorizationError(DomainError):
    status_code = 403
    code = "forbidden"


class DomainStateError(DomainError):
    """The entity exists but its current state does not allow the operation."""
    status_code = 409
    code = "invalid_state"


class StageNotFoundError(DomainStateError):
    code = "stage_not_found"

    def __init__(self, stage: str, stages: list[str]):
        super().__init__(
            f"Stage '{stage}' is not part of this batch",
            details={"stage": stage, "stages": list(stages)},
        )


class InvalidTransitionError(DomainStateError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"{entity} cannot move from '{current}' to '{target}'",
            details={"entity": entity, "current": current, "target": target},
        )


class InsufficientStockError(DomainStateError):
    code = "insufficient_stock"


class ConcurrencyError(DomainError):
    status_code = 409
    code = "concurrent_modification"

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} '{entity_id}' was modified concurrently, retry the request",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )
