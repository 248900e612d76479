from __future__ import annotations

from app.core.errors import StageNotFoundError
from app.db.models.catalog import Product

DEFAULT_STAGES = [
    "Inward",
    "QC",
    "Components Assembly",
    "Final Assembly",
    "Testing",
    "Packaging",
    "Completed",
]

# Appended after sub-component stages
ASSEMBLY_TAIL = ["Final Assembly", "Testing", "Packaging", "Completed"]


def resolve_stages(product: Product | None) -> list[str]:
    """Stage list for a new batch.

    Precedence: the product's own stage list, then its sub-components' stages
    flattened in sequence order (first occurrence wins) followed by the
    assembly tail, then the factory defaults.
    """
    if product is not None and product.stages:
        return [str(s) for s in product.stages]

    if product is not None and product.sub_components:
        seen: list[str] = []
        for sc in product.sub_components:
            for stage in sc.stages or []:
                if stage not in seen:
                    seen.append(stage)
        if seen:
            return seen + [s for s in ASSEMBLY_TAIL if s not in seen]

    return list(DEFAULT_STAGES)


def find_stage(stages: list[str], name: str) -> int:
    wanted = (name or "").strip().lower()
    for i, stage in enumerate(stages):
        if stage.lower() == wanted:
            return i
    raise StageNotFoundError(name, stages)


def is_terminal(stages: list[str], index: int) -> bool:
    return index == len(stages) - 1
