"""Status enumerations and their explicit transition tables."""

from __future__ import annotations

import enum
from typing import Iterable

from app.core.errors import InvalidTransitionError, ValidationError


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    AWAITING_MATERIALS = "awaiting_materials"
    PARTIALLY_IN_STOCK = "partially_in_stock"
    IN_PRODUCTION = "in_production"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PurchaseOrderStatus(str, enum.Enum):
    ORDERED = "ordered"
    PARTIALLY_RECEIVED = "partially_received"
    ARRIVED = "arrived"
    CANCELLED = "cancelled"


class BatchStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StepStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"


class StateMachine:
    def __init__(self, entity: str, transitions: dict[enum.Enum, Iterable[enum.Enum]]):
        self.entity = entity
        self._transitions = {str(k.value): {str(v.value) for v in targets} for k, targets in transitions.items()}

    @property
    def states(self) -> list[str]:
        return list(self._transitions)

    def parse(self, value: str) -> str:
        state = (value or "").strip().lower()
        if state not in self._transitions:
            raise ValidationError(
                f"Unknown {self.entity} status '{value}'",
                field="status",
                details={"allowed": self.states},
            )
        return state

    def can(self, current: str, target: str) -> bool:
        return target in self._transitions.get(current, set())

    def is_terminal(self, state: str) -> bool:
        return not self._transitions.get(state)

    def check(self, current: str, target: str) -> None:
        if not self.can(current, target):
            raise InvalidTransitionError(self.entity, current, target)


O = OrderStatus
ORDER_FLOW = StateMachine(
    "sales order",
    {
        O.PENDING: [O.CONFIRMED, O.PARTIALLY_IN_STOCK, O.AWAITING_MATERIALS, O.IN_PRODUCTION, O.CANCELLED],
        O.AWAITING_MATERIALS: [O.CONFIRMED, O.PARTIALLY_IN_STOCK, O.AWAITING_MATERIALS, O.CANCELLED],
        O.PARTIALLY_IN_STOCK: [O.CONFIRMED, O.IN_PRODUCTION, O.CANCELLED],
        O.IN_PRODUCTION: [O.CONFIRMED, O.PARTIALLY_IN_STOCK, O.CANCELLED],
        O.CONFIRMED: [O.DELIVERED, O.CANCELLED],
        O.DELIVERED: [O.COMPLETED],
        O.COMPLETED: [],
        O.CANCELLED: [],
    },
)

P = PurchaseOrderStatus
PURCHASE_ORDER_FLOW = StateMachine(
    "purchase order",
    {
        P.ORDERED: [P.PARTIALLY_RECEIVED, P.ARRIVED, P.CANCELLED],
        P.PARTIALLY_RECEIVED: [P.PARTIALLY_RECEIVED, P.ARRIVED, P.CANCELLED],
        P.ARRIVED: [],
        P.CANCELLED: [],
    },
)

B = BatchStatus
# completed -> completed lets the terminal stage be re-stamped without side effects
BATCH_FLOW = StateMachine(
    "manufacturing batch",
    {
        B.IN_PROGRESS: [B.IN_PROGRESS, B.COMPLETED, B.CANCELLED],
        B.COMPLETED: [B.COMPLETED],
        B.CANCELLED: [],
    },
)

S = StepStatus
STEP_FLOW = StateMachine(
    "workflow step",
    {
        S.NOT_STARTED: [S.IN_PROGRESS, S.COMPLETED, S.ON_HOLD, S.CANCELLED],
        S.IN_PROGRESS: [S.COMPLETED, S.ON_HOLD, S.CANCELLED],
        S.ON_HOLD: [S.IN_PROGRESS, S.COMPLETED, S.CANCELLED],
        S.COMPLETED: [],
        S.CANCELLED: [],
    },
)
