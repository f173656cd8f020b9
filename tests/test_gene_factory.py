"""Tests for random gene generation and brute-force grids."""
from __future__ import annotations

import random
from decimal import Decimal

import pytest

from evo_optimizer.optimization.candidate import GeneSpec, GeneValue
from evo_optimizer.optimization.errors import InvalidSpec
from evo_optimizer.optimization.gene_factory import (
    FIBONACCI,
    CandidateFactory,
    cartesian_candidates,
    generate_gene,
    random_decimal_between,
    step_values,
)
from tests._optimizer_test_utils import dec_spec, int_spec


def test_int_genes_stay_in_bounds_and_reach_both_ends() -> None:
    rng = random.Random(3)
    spec = int_spec("x", 2, 6)
    seen = {generate_gene(spec, rng).value for _ in range(500)}
    assert seen == {2, 3, 4, 5, 6}


def test_decimal_genes_respect_bounds_and_precision() -> None:
    rng = random.Random(11)
    spec = dec_spec("y", "0.10", "0.30")
    values = [generate_gene(spec, rng) for _ in range(1000)]
    assert all(v.kind == "decimal" for v in values)
    assert all(Decimal("0.10") <= v.value <= Decimal("0.30") for v in values)
    # precision inferred from the bounds (two places)
    assert all(-v.value.as_tuple().exponent <= 2 for v in values)
    found = {v.value for v in values}
    assert Decimal("0.10") in found and Decimal("0.30") in found


class Edge(random.Random):
    def __init__(self, draw: float) -> None:
        super().__init__(0)
        self.draw = draw

    def random(self):  # type: ignore[override]
        return self.draw


@pytest.mark.parametrize("draw, expected", [(0.0, "0.2"), (0.9999999, "0.3")])
def test_coarse_precision_stays_on_grid_inside_bounds(draw, expected) -> None:
    value = random_decimal_between(Decimal("0.12"), Decimal("0.38"), 1, Edge(draw))
    assert value == Decimal(expected)
    assert -value.as_tuple().exponent == 1


def test_precision_without_any_value_in_bounds_is_rejected() -> None:
    spec = dec_spec("y", "0.12", "0.18", precision=1)
    with pytest.raises(InvalidSpec):
        spec.validate()
    with pytest.raises(InvalidSpec):
        CandidateFactory([spec])
    with pytest.raises(ValueError):
        random_decimal_between(Decimal("0.12"), Decimal("0.18"), 1, random.Random(0))
    assert dec_spec("y", "0.12", "0.28", precision=1).validate().precision_bounds() == (Decimal("0.2"), Decimal("0.2"))


def test_explicit_precision_overrides_inferred() -> None:
    rng = random.Random(5)
    spec = dec_spec("y", "1", "2", precision=3)
    value = generate_gene(spec, rng).value
    assert -value.as_tuple().exponent == 3


def test_spec_without_bounds_is_rejected() -> None:
    with pytest.raises(InvalidSpec):
        generate_gene(GeneSpec(key="broken"), random.Random(0))
    with pytest.raises(InvalidSpec):
        CandidateFactory([GeneSpec(key="broken")])


def test_duplicate_keys_are_rejected() -> None:
    with pytest.raises(InvalidSpec):
        CandidateFactory([int_spec("x", 0, 1), int_spec("x", 0, 5)])


def test_fibonacci_genes_draw_from_sequence() -> None:
    rng = random.Random(1)
    spec = GeneSpec(key="period", min_int=4, max_int=100, fibonacci=True)
    values = {generate_gene(spec, rng).value for _ in range(200)}
    assert values <= {5, 8, 13, 21, 34, 55, 89}
    assert values <= set(FIBONACCI)


def test_actual_value_is_used_when_requested() -> None:
    spec = GeneSpec(key="x", min_int=0, max_int=100, actual=GeneValue.of_int(42))
    factory = CandidateFactory([spec], random.Random(0))
    assert factory.generate(use_actual=True).to_params() == {"x": 42}


def test_regenerate_gene_only_touches_one_index() -> None:
    factory = CandidateFactory([int_spec("a", 0, 1000), int_spec("b", 0, 1000)], random.Random(9))
    base = factory.generate()
    redrawn = factory.regenerate_gene(base, 1)
    assert redrawn.genes[0] == base.genes[0]
    assert redrawn.id != base.id


def test_step_values_and_cartesian_grid() -> None:
    assert [v.value for v in step_values(int_spec("a", 1, 7, step=3))] == [1, 4, 7]
    assert [v.value for v in step_values(dec_spec("b", "0.1", "0.3", step="0.1"))] == [
        Decimal("0.1"), Decimal("0.2"), Decimal("0.3")
    ]

    grid = cartesian_candidates([int_spec("a", 1, 3, step=1), dec_spec("b", "0.1", "0.3", step="0.1")])
    assert len(grid) == 9
    assert len({c.gene_key() for c in grid}) == 9
    assert grid[0].to_params() == {"a": 1, "b": Decimal("0.1")}


def test_cartesian_requires_steps() -> None:
    with pytest.raises(InvalidSpec):
        cartesian_candidates([int_spec("a", 1, 3)])
