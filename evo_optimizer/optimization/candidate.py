# evo_optimizer/optimization/candidate.py
"""
Parameter vectors under evaluation.

- GeneValue: tagged int/decimal value. Equality is (kind, value), never raises.
- GeneSpec: one parameter's legal domain (int or decimal bounds, optional step).
- Candidate: ordered (key, GeneValue) genes + id + optional score/result.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from evo_optimizer.optimization.errors import InvalidSpec

GeneKind = Literal["int", "decimal"]
Number = Union[int, Decimal]


def _new_id() -> str:
    return uuid.uuid4().hex


def to_decimal(value: Any) -> Decimal:
    """Coerce JSON-ish numbers to Decimal without binary float noise (1.5 -> Decimal('1.5'))."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidSpec(f"Boolean is not a decimal gene value: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidSpec(f"Not a decimal value: {value!r}") from exc


def decimal_places(value: Decimal) -> int:
    exponent = value.as_tuple().exponent
    if not isinstance(exponent, int):
        return 0
    return max(0, -exponent)


# ----------------------------- Gene values -------------------------------


@dataclass(frozen=True)
class GeneValue:
    kind: GeneKind
    value: Number

    @classmethod
    def of_int(cls, value: int) -> "GeneValue":
        return cls("int", int(value))

    @classmethod
    def of_decimal(cls, value: Any) -> "GeneValue":
        return cls("decimal", to_decimal(value))

    @property
    def is_int(self) -> bool:
        return self.kind == "int"

    def to_json(self) -> Union[int, str]:
        return int(self.value) if self.kind == "int" else str(self.value)

    def __str__(self) -> str:
        return str(self.value)


Gene = Tuple[str, GeneValue]


# ------------------------------ Gene specs -------------------------------


@dataclass(frozen=True)
class GeneSpec:
    """Declares one parameter: key + exactly one of int/decimal bounds."""

    key: str
    min_int: Optional[int] = None
    max_int: Optional[int] = None
    min_decimal: Optional[Decimal] = None
    max_decimal: Optional[Decimal] = None
    precision: Optional[int] = None
    step: Optional[Decimal] = None
    fibonacci: bool = False
    actual: Optional[GeneValue] = None

    @property
    def is_int(self) -> bool:
        return self.min_int is not None and self.max_int is not None

    @property
    def is_decimal(self) -> bool:
        return self.min_decimal is not None and self.max_decimal is not None

    def resolved_precision(self) -> int:
        if self.precision is not None:
            return int(self.precision)
        if not self.is_decimal:
            return 0
        return max(decimal_places(self.min_decimal), decimal_places(self.max_decimal))  # type: ignore[arg-type]

    def precision_bounds(self) -> Tuple[Decimal, Decimal]:
        """Decimal bounds moved inward onto the resolved precision grid."""
        quantum = Decimal(1).scaleb(-self.resolved_precision())
        return (
            self.min_decimal.quantize(quantum, rounding=ROUND_CEILING),  # type: ignore[union-attr]
            self.max_decimal.quantize(quantum, rounding=ROUND_FLOOR),  # type: ignore[union-attr]
        )

    def validate(self, *, require_step: bool = False) -> "GeneSpec":
        if not self.key:
            raise InvalidSpec("Gene spec requires a non-empty key")
        if self.is_int == self.is_decimal:
            raise InvalidSpec(
                f"Gene '{self.key}': exactly one of int bounds or decimal bounds must be set"
            )
        if self.is_int and self.min_int > self.max_int:  # type: ignore[operator]
            raise InvalidSpec(f"Gene '{self.key}': min_int {self.min_int} > max_int {self.max_int}")
        if self.is_decimal and self.min_decimal > self.max_decimal:  # type: ignore[operator]
            raise InvalidSpec(
                f"Gene '{self.key}': min_decimal {self.min_decimal} > max_decimal {self.max_decimal}"
            )
        if self.precision is not None and self.precision < 0:
            raise InvalidSpec(f"Gene '{self.key}': precision must be >= 0")
        if self.is_decimal and self.precision is not None:
            lo, hi = self.precision_bounds()
            if lo > hi:
                raise InvalidSpec(
                    f"Gene '{self.key}': no value with {self.precision} decimal places lies in "
                    f"[{self.min_decimal}, {self.max_decimal}]"
                )
        if require_step and (self.step is None or self.step <= 0):
            raise InvalidSpec(f"Gene '{self.key}': brute-force mode needs a positive step")
        return self

    def contains(self, value: GeneValue) -> bool:
        if self.is_int:
            return value.kind == "int" and self.min_int <= value.value <= self.max_int  # type: ignore[operator]
        if self.is_decimal:
            return value.kind == "decimal" and self.min_decimal <= value.value <= self.max_decimal  # type: ignore[operator]
        return False


def _first(data: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return None


def gene_spec_from_dict(data: Dict[str, Any]) -> GeneSpec:
    """
    Build a GeneSpec from a config mapping. Recognized keys (any case style):
      key, min/max (type inferred), min_int/max_int, min_decimal/max_decimal,
      precision|scale, step, fibonacci, actual
    """
    norm = {str(k).replace("-", "_").lower(): v for k, v in data.items()}
    key = str(norm.get("key") or "").strip()

    min_int = _first(norm, "min_int", "minint")
    max_int = _first(norm, "max_int", "maxint")
    min_dec = _first(norm, "min_decimal", "mindecimal")
    max_dec = _first(norm, "max_decimal", "maxdecimal")

    lo, hi = norm.get("min"), norm.get("max")
    if lo is not None and hi is not None and min_int is None and min_dec is None:
        if isinstance(lo, int) and isinstance(hi, int) and not isinstance(lo, bool):
            min_int, max_int = lo, hi
        else:
            min_dec, max_dec = lo, hi

    precision = _first(norm, "precision", "scale")
    step = norm.get("step")

    spec = GeneSpec(
        key=key,
        min_int=int(min_int) if min_int is not None else None,
        max_int=int(max_int) if max_int is not None else None,
        min_decimal=to_decimal(min_dec) if min_dec is not None else None,
        max_decimal=to_decimal(max_dec) if max_dec is not None else None,
        precision=int(precision) if precision is not None else None,
        step=to_decimal(step) if step is not None else None,
        fibonacci=bool(norm.get("fibonacci", False)),
    )
    actual = norm.get("actual")
    if actual is not None:
        value = GeneValue.of_int(actual) if spec.is_int else GeneValue.of_decimal(actual)
        spec = replace(spec, actual=value)
    return spec


# ------------------------------- Windows ---------------------------------


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)).date()


@dataclass(frozen=True)
class EvaluationWindow:
    """Inclusive [start, end] calendar dates handed to the simulator."""

    start: date
    end: date

    @classmethod
    def of(cls, start: Any, end: Any) -> "EvaluationWindow":
        return cls(_to_date(start), _to_date(end))

    def to_payload(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class EvaluationResult:
    """Raw statistics for one evaluation plus the window they were computed on."""

    stats: Dict[str, float]
    window: EvaluationWindow
    score: float
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "stats": dict(self.stats),
            "window": self.window.to_payload(),
            "score": self.score,
        }
        if self.error is not None:
            out["error"] = self.error
        return out


# ------------------------------ Candidates -------------------------------


@dataclass(eq=False)
class Candidate:
    genes: Tuple[Gene, ...]
    id: str = field(default_factory=_new_id)
    score: Optional[float] = None
    result: Optional[EvaluationResult] = None

    def __post_init__(self) -> None:
        self.genes = tuple((str(k), v) for k, v in self.genes)

    def __len__(self) -> int:
        return len(self.genes)

    @property
    def is_scored(self) -> bool:
        return self.score is not None

    @property
    def keys(self) -> List[str]:
        return [k for k, _ in self.genes]

    def gene_key(self) -> Tuple[Tuple[str, str, Number], ...]:
        """Hashable dedupe vector: (key, kind, value) per gene, in order."""
        return tuple((k, v.kind, v.value) for k, v in self.genes)

    def same_genes(self, other: "Candidate") -> bool:
        return self.gene_key() == other.gene_key()

    def to_params(self) -> Dict[str, Number]:
        return {k: v.value for k, v in self.genes}

    def to_json_params(self) -> Dict[str, Union[int, str]]:
        return {k: v.to_json() for k, v in self.genes}

    def to_key_value_string(self) -> str:
        return " ".join(f"{k} {v}" for k, v in self.genes)

    def with_gene(self, index: int, value: GeneValue) -> "Candidate":
        genes = list(self.genes)
        genes[index] = (genes[index][0], value)
        return Candidate(tuple(genes))

    def spawn(self) -> "Candidate":
        """Unscored copy with a fresh id (genetic operators)."""
        return Candidate(self.genes)

    def clone(self) -> "Candidate":
        """Unscored copy keeping the id (out-of-sample validation)."""
        return Candidate(self.genes, id=self.id)

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "params": self.to_json_params(), "score": self.score}

    def __repr__(self) -> str:
        return f"Candidate(id={self.id[:8]}, score={self.score}, genes=[{self.to_key_value_string()}])"


def candidate_from_params(specs: Iterable[GeneSpec], params: Dict[str, Any]) -> Candidate:
    """Build a candidate in spec order from a plain {key: number} mapping."""
    genes: List[Gene] = []
    for spec in specs:
        if spec.key not in params:
            raise KeyError(f"Missing value for gene '{spec.key}'")
        raw = params[spec.key]
        genes.append((spec.key, GeneValue.of_int(raw) if spec.is_int else GeneValue.of_decimal(raw)))
    return Candidate(tuple(genes))


__all__ = [
    "GeneValue",
    "GeneSpec",
    "Gene",
    "Candidate",
    "EvaluationWindow",
    "EvaluationResult",
    "gene_spec_from_dict",
    "candidate_from_params",
    "to_decimal",
    "decimal_places",
]
