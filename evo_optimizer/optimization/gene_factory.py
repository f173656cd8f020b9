# evo_optimizer/optimization/gene_factory.py
from __future__ import annotations

import itertools
import random
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, Decimal
from typing import Iterable, Iterator, List, Optional, Sequence

from evo_optimizer.optimization.candidate import Candidate, GeneSpec, GeneValue
from evo_optimizer.optimization.errors import InvalidSpec

# Fibonacci numbers up to 10946 (alternative, non-uniform gene distribution)
FIBONACCI: List[int] = [0, 1, 2, 3, 5, 8, 13, 21, 34, 55, 89, 144, 233, 377, 610,
                        987, 1597, 2584, 4181, 6765, 10946]


# ----------------------------- Sampling ops ------------------------------

def random_int_between(low: int, high: int, rng: random.Random) -> int:
    """Uniform int in [low, high] inclusive."""
    return int(rng.randint(int(low), int(high)))


def _quantum(precision: int) -> Decimal:
    return Decimal(1).scaleb(-int(precision))


def random_decimal_between(low: Decimal, high: Decimal, precision: int, rng: random.Random) -> Decimal:
    """Uniform decimal in [low, high] with exactly `precision` places.

    The bounds are moved inward onto the precision grid before sampling.
    """
    quantum = _quantum(precision)
    lo = low.quantize(quantum, rounding=ROUND_CEILING)
    hi = high.quantize(quantum, rounding=ROUND_FLOOR)
    if lo > hi:
        raise ValueError(f"No value with {precision} decimal places in [{low}, {high}]")
    raw = rng.random() * (float(hi) - float(lo)) + float(lo)
    value = Decimal(repr(raw)).quantize(quantum, rounding=ROUND_HALF_EVEN)
    return min(max(value, lo), hi)


def _fibonacci_choice(low: float, high: float, rng: random.Random) -> Optional[int]:
    pool = [f for f in FIBONACCI if low <= f <= high]
    if not pool:
        return None
    return rng.choice(pool)


def generate_gene(spec: GeneSpec, rng: random.Random, *, use_actual: bool = False) -> GeneValue:
    """
    One random value inside the gene spec's domain.
    - use_actual: return the gene spec's pinned `actual` value when it has one
    - fibonacci: draw from Fibonacci numbers inside the bounds (uniform fallback)
    """
    if use_actual and spec.actual is not None:
        return spec.actual

    if spec.is_decimal:
        precision = spec.resolved_precision()
        if spec.fibonacci:
            fib = _fibonacci_choice(float(spec.min_decimal), float(spec.max_decimal), rng)  # type: ignore[arg-type]
            if fib is not None:
                return GeneValue.of_decimal(Decimal(fib).quantize(_quantum(precision)))
        return GeneValue.of_decimal(
            random_decimal_between(spec.min_decimal, spec.max_decimal, precision, rng)  # type: ignore[arg-type]
        )

    if not spec.is_int:
        raise InvalidSpec(f"Gene '{spec.key}': neither int nor decimal bounds are set")

    if spec.fibonacci:
        fib = _fibonacci_choice(spec.min_int, spec.max_int, rng)  # type: ignore[arg-type]
        if fib is not None:
            return GeneValue.of_int(fib)
    return GeneValue.of_int(random_int_between(spec.min_int, spec.max_int, rng))  # type: ignore[arg-type]


# ----------------------------- Brute force -------------------------------

def step_values(spec: GeneSpec) -> List[GeneValue]:
    """All values min..max (inclusive) by `step` for one spec."""
    spec.validate(require_step=True)
    out: List[GeneValue] = []
    if spec.is_int:
        step = int(spec.step)  # type: ignore[arg-type]
        if step <= 0:
            raise InvalidSpec(f"Gene '{spec.key}': integer step must be >= 1")
        for v in range(int(spec.min_int), int(spec.max_int) + 1, step):  # type: ignore[arg-type]
            out.append(GeneValue.of_int(v))
        return out
    cur: Decimal = spec.min_decimal  # type: ignore[assignment]
    while cur <= spec.max_decimal:  # type: ignore[operator]
        out.append(GeneValue.of_decimal(cur))
        cur = cur + spec.step  # type: ignore[operator]
    return out


def cartesian_values(specs: Sequence[GeneSpec]) -> Iterator[tuple]:
    return itertools.product(*(step_values(s) for s in specs))


def cartesian_candidates(specs: Sequence[GeneSpec]) -> List[Candidate]:
    """Full brute-force population: one candidate per combination of stepped values."""
    return CandidateFactory(specs).cartesian()


# ------------------------------- Factory ---------------------------------

class CandidateFactory:
    """Generates candidates from a fixed list of gene specs and one random source."""

    def __init__(self, specs: Sequence[GeneSpec], rng: Optional[random.Random] = None) -> None:
        if not specs:
            raise InvalidSpec("At least one gene spec is required")
        self.specs: List[GeneSpec] = [s.validate() for s in specs]
        keys = [s.key for s in self.specs]
        if len(set(keys)) != len(keys):
            raise InvalidSpec(f"Duplicate gene keys: {keys}")
        self.rng = rng or random.Random()

    def generate(self, *, use_actual: bool = False) -> Candidate:
        genes = tuple((s.key, generate_gene(s, self.rng, use_actual=use_actual)) for s in self.specs)
        return Candidate(genes)

    def generate_many(self, count: int) -> List[Candidate]:
        return [self.generate() for _ in range(max(0, int(count)))]

    def regenerate_gene(self, candidate: Candidate, index: int) -> Candidate:
        """New candidate equal to `candidate` except gene `index`, which is redrawn."""
        return candidate.with_gene(index, generate_gene(self.specs[index], self.rng))

    def from_values(self, values: Iterable[GeneValue]) -> Candidate:
        values = tuple(values)
        if len(values) != len(self.specs):
            raise InvalidSpec(f"Expected {len(self.specs)} gene values, got {len(values)}")
        return Candidate(tuple((s.key, v) for s, v in zip(self.specs, values)))

    def cartesian(self) -> List[Candidate]:
        """Every combination of stepped values (brute-force population)."""
        return [self.from_values(combo) for combo in cartesian_values(self.specs)]


__all__ = [
    "FIBONACCI",
    "CandidateFactory",
    "generate_gene",
    "random_int_between",
    "random_decimal_between",
    "step_values",
    "cartesian_values",
    "cartesian_candidates",
]
