"""
Pure planning functions used by order confirmation and batch creation.

Nothing here touches the database: callers pass in a stock snapshot
(id -> quantity) and get back plain values.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Protocol

ZERO = Decimal("0")


class _Line(Protocol):
    product_id: str
    quantity: Decimal


@dataclass(frozen=True)
class Availability:
    product_id: str
    requested: Decimal
    available: Decimal
    to_manufacture: Decimal


@dataclass(frozen=True)
class BomRequirement:
    material_id: str
    quantity_required: Decimal
    uom: str = "EA"


@dataclass(frozen=True)
class Shortage:
    material_id: str
    required: Decimal
    available: Decimal

    @property
    def missing(self) -> Decimal:
        return self.required - self.available


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def resolve_availability(lines: Iterable[_Line], stock: Mapping[str, Decimal]) -> list[Availability]:
    """Split each requested line into what ships from stock and what must be built.

    `available = min(stock, requested)` and `to_manufacture = requested - available`.
    A product missing from the snapshot has zero stock; a negative snapshot
    value is treated as zero.
    """
    out: list[Availability] = []
    for line in lines:
        requested = _dec(line.quantity)
        on_hand = max(ZERO, _dec(stock.get(line.product_id)))
        available = min(on_hand, requested) if requested > 0 else ZERO
        to_manufacture = max(ZERO, requested - available)
        out.append(Availability(line.product_id, requested, available, to_manufacture))
    return out


def material_requirements(bom: Iterable[BomRequirement], quantity) -> dict[str, Decimal]:
    """Total material needed for `quantity` units, summed per material in BOM order."""
    qty = _dec(quantity)
    totals: dict[str, Decimal] = {}
    for line in bom:
        totals[line.material_id] = totals.get(line.material_id, ZERO) + _dec(line.quantity_required) * qty
    return totals


def shortages_for(requirements: Mapping[str, Decimal], stock: Mapping[str, Decimal]) -> list[Shortage]:
    out = []
    for material_id, required in requirements.items():
        if material_id not in stock:
            out.append(Shortage(material_id, required, ZERO))
            continue
        available = _dec(stock[material_id])
        if available < required:
            out.append(Shortage(material_id, required, available))
    return out


def shortages(bom: Iterable[BomRequirement], quantity, stock: Mapping[str, Decimal]) -> list[Shortage]:
    return shortages_for(material_requirements(bom, quantity), stock)


def is_feasible(bom: Iterable[BomRequirement], quantity, stock: Mapping[str, Decimal]) -> bool:
    """True iff every BOM line has `stock >= quantity_required * quantity`.

    An empty BOM is feasible; a material missing from the snapshot is not.
    """
    return not shortages(bom, quantity, stock)


def stage_progress(stage_count: int, index: int) -> int:
    """Percent complete after reaching stage `index` of `stage_count` stages."""
    if stage_count <= 1 or index >= stage_count - 1:
        return 100
    pct = Decimal(index * 100) / Decimal(stage_count - 1)
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
