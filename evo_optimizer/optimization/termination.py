# evo_optimizer/optimization/termination.py
"""Composable stop conditions evaluated against a GenerationStore after each generation."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from evo_optimizer.optimization.generation import GenerationStore


class Termination:
    def has_reached(self, store: GenerationStore) -> bool:
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        return {"type": type(self).__name__}


class GenerationNumberTermination(Termination):
    def __init__(self, expected: int) -> None:
        if expected < 1:
            raise ValueError("expected generation number must be >= 1")
        self.expected = int(expected)

    def has_reached(self, store: GenerationStore) -> bool:
        return store.generation_number >= self.expected

    def describe(self) -> Dict[str, Any]:
        return {"type": "generation_number", "expected": self.expected}


class FitnessStagnationTermination(Termination):
    """Best score has not improved for `expected` consecutive generations."""

    def __init__(self, expected: int) -> None:
        if expected < 1:
            raise ValueError("expected stagnant generations must be >= 1")
        self.expected = int(expected)

    def has_reached(self, store: GenerationStore) -> bool:
        return store.stagnant_streak >= self.expected

    def describe(self) -> Dict[str, Any]:
        return {"type": "fitness_stagnation", "expected": self.expected}


class FruitlessGenerationsTermination(Termination):
    """`expected` consecutive generations without a single positive score."""

    def __init__(self, expected: int) -> None:
        if expected < 1:
            raise ValueError("expected fruitless generations must be >= 1")
        self.expected = int(expected)

    def has_reached(self, store: GenerationStore) -> bool:
        return store.fruitless_streak >= self.expected

    def describe(self) -> Dict[str, Any]:
        return {"type": "fruitless_generations", "expected": self.expected}


class ExhaustedSearchTermination(Termination):
    """`expected` consecutive generations that added no unseen gene vector."""

    def __init__(self, expected: int) -> None:
        if expected < 1:
            raise ValueError("expected exhausted generations must be >= 1")
        self.expected = int(expected)

    def has_reached(self, store: GenerationStore) -> bool:
        return store.idle_streak >= self.expected

    def describe(self) -> Dict[str, Any]:
        return {"type": "exhausted_search", "expected": self.expected}


class LogicalOrTermination(Termination):
    """True if any child is; no children -> False."""

    def __init__(self, *terminations: Termination) -> None:
        self.terminations: List[Termination] = list(terminations)

    def add(self, termination: Termination) -> "LogicalOrTermination":
        self.terminations.append(termination)
        return self

    def has_reached(self, store: GenerationStore) -> bool:
        return any(t.has_reached(store) for t in self.terminations)

    def describe(self) -> Dict[str, Any]:
        return {"type": "or", "children": [t.describe() for t in self.terminations]}


class LogicalAndTermination(Termination):
    """True if every child is; no children -> False."""

    def __init__(self, *terminations: Termination) -> None:
        self.terminations: List[Termination] = list(terminations)

    def add(self, termination: Termination) -> "LogicalAndTermination":
        self.terminations.append(termination)
        return self

    def has_reached(self, store: GenerationStore) -> bool:
        if not self.terminations:
            return False
        return all(t.has_reached(store) for t in self.terminations)

    def describe(self) -> Dict[str, Any]:
        return {"type": "and", "children": [t.describe() for t in self.terminations]}


def genetic_termination(
    *,
    fruitless_generations: int = 3,
    generations: Optional[int] = None,
    stagnation_generations: Optional[int] = None,
    exhausted_generations: Optional[int] = None,
) -> LogicalOrTermination:
    """Default genetic-mode policy: fruitless cap OR generation cap OR stagnation
    OR an exhausted search space."""
    term = LogicalOrTermination(FruitlessGenerationsTermination(fruitless_generations))
    if generations:
        term.add(GenerationNumberTermination(generations))
    if stagnation_generations:
        term.add(FitnessStagnationTermination(stagnation_generations))
    if exhausted_generations:
        term.add(ExhaustedSearchTermination(exhausted_generations))
    return term


__all__ = [
    "Termination",
    "GenerationNumberTermination",
    "FitnessStagnationTermination",
    "FruitlessGenerationsTermination",
    "ExhaustedSearchTermination",
    "LogicalOrTermination",
    "LogicalAndTermination",
    "genetic_termination",
]
