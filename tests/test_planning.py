from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.errors import StageNotFoundError
from app.db.models.catalog import Product, SubComponent
from services.manufacturing.planning import (
    BomRequirement,
    is_feasible,
    material_requirements,
    resolve_availability,
    shortages,
    stage_progress,
)
from services.manufacturing.stages import ASSEMBLY_TAIL, DEFAULT_STAGES, find_stage, is_terminal, resolve_stages


def _line(product_id, qty):
    return SimpleNamespace(product_id=product_id, quantity=Decimal(str(qty)))


@pytest.mark.parametrize(
    "requested, on_hand",
    [(5, 2), (5, 5), (5, 9), (3, 0), (0, 4), (7, -2), (Decimal("2.5"), Decimal("1.25"))],
)
def test_available_plus_to_manufacture_equals_requested(requested, on_hand):
    [a] = resolve_availability([_line("P1", requested)], {"P1": Decimal(str(on_hand))})
    assert a.available + a.to_manufacture == Decimal(str(requested))
    assert a.available >= 0 and a.to_manufacture >= 0


def test_stock_of_two_against_request_of_five():
    [a] = resolve_availability([_line("P1", 5)], {"P1": Decimal("2")})
    assert a.available == Decimal("2")
    assert a.to_manufacture == Decimal("3")


def test_unknown_product_has_no_stock():
    [a] = resolve_availability([_line("ghost", 4)], {})
    assert a.available == 0
    assert a.to_manufacture == Decimal("4")


def test_zero_requested_needs_nothing():
    [a] = resolve_availability([_line("P1", 0)], {"P1": Decimal("10")})
    assert (a.available, a.to_manufacture) == (0, 0)


def test_lines_keep_their_order():
    out = resolve_availability([_line("B", 1), _line("A", 1)], {"A": Decimal("1")})
    assert [a.product_id for a in out] == ["B", "A"]


def test_bom_of_five_against_stock_of_twelve_for_three_units():
    bom = [BomRequirement("M", Decimal("5"))]
    stock = {"M": Decimal("12")}
    assert is_feasible(bom, 3, stock) is False
    # The check is read-only
    assert stock == {"M": Decimal("12")}
    [s] = shortages(bom, 3, stock)
    assert s.required == Decimal("15")
    assert s.missing == Decimal("3")


@pytest.mark.parametrize("stock_a", [0, 9, 10, 11])
@pytest.mark.parametrize("stock_b", [0, 5, 6])
@pytest.mark.parametrize("qty", [1, 2])
def test_infeasible_iff_some_line_exceeds_stock(stock_a, stock_b, qty):
    bom = [BomRequirement("A", Decimal("5")), BomRequirement("B", Decimal("3"))]
    stock = {"A": Decimal(stock_a), "B": Decimal(stock_b)}
    some_line_short = 5 * qty > stock_a or 3 * qty > stock_b
    assert is_feasible(bom, qty, stock) is (not some_line_short)


def test_exact_stock_is_enough():
    assert is_feasible([BomRequirement("M", Decimal("4"))], 3, {"M": Decimal("12")}) is True


def test_empty_bom_is_feasible():
    assert is_feasible([], 100, {}) is True


def test_material_missing_from_snapshot_is_infeasible():
    assert is_feasible([BomRequirement("M", Decimal("1"))], 1, {}) is False


def test_requirements_sum_repeated_materials():
    bom = [BomRequirement("M", Decimal("2")), BomRequirement("N", Decimal("1")), BomRequirement("M", Decimal("0.5"))]
    assert material_requirements(bom, 4) == {"M": Decimal("10.0"), "N": Decimal("4")}


@pytest.mark.parametrize(
    "count, index, expected",
    [(3, 0, 0), (3, 1, 50), (3, 2, 100), (7, 1, 17), (7, 3, 50), (7, 5, 83), (7, 6, 100), (1, 0, 100)],
)
def test_stage_progress(count, index, expected):
    assert stage_progress(count, index) == expected


def test_progress_never_decreases_moving_forward():
    values = [stage_progress(len(DEFAULT_STAGES), i) for i in range(len(DEFAULT_STAGES))]
    assert values == sorted(values)
    assert values[-1] == 100


def test_product_stages_win():
    p = Product(stages=["Cut", "Weld", "Done"], sub_components=[SubComponent(name="Frame", sequence=0, stages=["X"])])
    assert resolve_stages(p) == ["Cut", "Weld", "Done"]


def test_sub_component_stages_are_flattened_then_assembled():
    p = Product(
        stages=[],
        sub_components=[
            SubComponent(name="Motor", sequence=0, stages=["Winding", "QC"]),
            SubComponent(name="Casing", sequence=1, stages=["Casting", "QC"]),
        ],
    )
    assert resolve_stages(p) == ["Winding", "QC", "Casting"] + ASSEMBLY_TAIL


def test_default_stages():
    assert resolve_stages(Product(stages=[])) == DEFAULT_STAGES
    assert resolve_stages(None) == DEFAULT_STAGES


def test_find_stage_ignores_case():
    stages = ["Inward", "QC", "Completed"]
    assert find_stage(stages, "qc") == 1
    assert find_stage(stages, " completed ") == 2
    assert is_terminal(stages, 2)
    assert not is_terminal(stages, 1)


def test_find_stage_unknown():
    with pytest.raises(StageNotFoundError) as exc:
        find_stage(["Inward", "QC"], "Painting")
    assert exc.value.details["stages"] == ["Inward", "QC"]
