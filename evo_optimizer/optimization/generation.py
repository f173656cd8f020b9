# evo_optimizer/optimization/generation.py
"""
Generation history + the single deduplication authority.

Only the engine thread touches a store, and only between evaluation phases.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from evo_optimizer.optimization.candidate import Candidate, GeneSpec
from evo_optimizer.optimization.errors import InvalidSpec

logger = logging.getLogger("optimization.generation")

GeneKey = Tuple


@dataclass
class Generation:
    number: int
    candidates: List[Candidate]
    created_at: datetime = field(default_factory=datetime.now)
    best: Optional[Candidate] = None
    is_fruitless: bool = False
    scored: bool = False

    def __post_init__(self) -> None:
        if self.number < 1:
            raise ValueError(f"Generation number must start at 1, got {self.number}")

    def pending(self) -> List[Candidate]:
        return [c for c in self.candidates if not c.is_scored]

    def to_log_payload(self) -> Dict[str, object]:
        return {
            "generation": self.number,
            "size": len(self.candidates),
            "fruitless": self.is_fruitless,
            "best_score": self.best.score if self.best is not None else None,
            "candidates": [c.summary() for c in self.candidates],
        }


def select_distinct(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Drop duplicate gene vectors; a scored copy always beats an unscored one.

    Order of first appearance is kept otherwise.
    """
    chosen: Dict[GeneKey, Candidate] = {}
    order: List[GeneKey] = []
    for c in candidates:
        key = c.gene_key()
        if key not in chosen:
            chosen[key] = c
            order.append(key)
        elif not chosen[key].is_scored and c.is_scored:
            chosen[key] = c
    return [chosen[k] for k in order]


class GenerationStore:
    def __init__(
        self,
        specs: Sequence[GeneSpec],
        max_size: int,
        *,
        max_retained_generations: Optional[int] = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if max_retained_generations is not None and max_retained_generations < 1:
            raise ValueError("max_retained_generations must be >= 1")
        self.specs = list(specs)
        self.max_size = int(max_size)
        self.max_retained_generations = max_retained_generations
        self.generations: List[Generation] = []
        self.best: Optional[Candidate] = None
        self.fruitless_streak = 0
        self.stagnant_streak = 0
        self.idle_streak = 0
        self._number = 0
        self._seen: Set[GeneKey] = set()
        self._profitable: Dict[GeneKey, Candidate] = {}

    # ------------------------------------------------------------------ state

    @property
    def generation_number(self) -> int:
        return self._number

    @property
    def current(self) -> Optional[Generation]:
        return self.generations[-1] if self.generations else None

    def has_seen(self, candidate: Candidate) -> bool:
        return candidate.gene_key() in self._seen

    # ------------------------------------------------------------- mutation

    def _validate(self, candidate: Candidate) -> None:
        if len(candidate) != len(self.specs):
            raise InvalidSpec(
                f"Candidate {candidate.id} has {len(candidate)} genes, expected {len(self.specs)}"
            )
        for (key, value), spec in zip(candidate.genes, self.specs):
            if key != spec.key:
                raise InvalidSpec(f"Gene order mismatch: got '{key}', expected '{spec.key}'")
            if not spec.contains(value):
                raise InvalidSpec(f"Gene '{key}' value {value} ({value.kind}) outside its domain")

    def _push(self, candidates: Iterable[Candidate]) -> Generation:
        batch = list(candidates)
        for c in batch:
            self._validate(c)
        distinct = select_distinct(batch)
        kept = [c for c in distinct if c.is_scored or c.gene_key() not in self._seen]
        dropped = len(batch) - len(kept)
        if dropped:
            logger.debug("generation %d: dropped %d duplicate/known candidates", self._number + 1, dropped)
        self._seen.update(c.gene_key() for c in kept)
        # no new gene vector at all: the search space may be exhausted
        if any(not c.is_scored for c in kept):
            self.idle_streak = 0
        else:
            self.idle_streak += 1

        self._number += 1
        gen = Generation(self._number, kept)
        self.generations.append(gen)
        if self.max_retained_generations is not None:
            overflow = len(self.generations) - self.max_retained_generations
            if overflow > 0:
                del self.generations[:overflow]
        return gen

    def seed(self, candidates: Iterable[Candidate]) -> Generation:
        if self.generations or self._number:
            raise RuntimeError("Store already seeded")
        return self._push(candidates)

    def advance(self, candidates: Iterable[Candidate]) -> Generation:
        if not self._number:
            raise RuntimeError("Store must be seeded before advancing")
        return self._push(candidates)

    def on_generation_scored(self) -> Generation:
        """Filter to positive scores, sort, truncate, detect fruitless, track the best."""
        gen = self.current
        if gen is None:
            raise RuntimeError("No generation to score")

        positive = [c for c in gen.candidates if c.score is not None and c.score > 0]
        positive.sort(key=lambda c: c.score, reverse=True)  # type: ignore[arg-type, return-value]
        positive = positive[: self.max_size]

        if positive:
            gen.candidates = positive
            gen.is_fruitless = False
            gen.best = positive[0]
            self.fruitless_streak = 0
            for c in positive:
                key = c.gene_key()
                prev = self._profitable.get(key)
                if prev is None or c.score > prev.score:  # type: ignore[operator]
                    self._profitable[key] = c
        else:
            # raw candidates stay so the engine can reseed around them
            gen.is_fruitless = True
            gen.best = None
            self.fruitless_streak += 1

        if gen.best is not None and (self.best is None or gen.best.score > self.best.score):  # type: ignore[operator]
            self.best = gen.best
            self.stagnant_streak = 0
        else:
            self.stagnant_streak += 1

        gen.scored = True
        return gen

    # -------------------------------------------------------------- queries

    def profitable_candidates(self) -> List[Candidate]:
        """Distinct positively scored candidates across the whole run, best first."""
        out = list(self._profitable.values())
        out.sort(key=lambda c: c.score, reverse=True)  # type: ignore[arg-type, return-value]
        return out


__all__ = ["Generation", "GenerationStore", "select_distinct"]
