# evo_optimizer/optimization/errors.py
from __future__ import annotations

from typing import Optional


class OptimizationError(Exception):
    """Base class for failures raised by the search core."""


class InvalidSpec(OptimizationError, ValueError):
    """A gene specification has no usable domain (or an unusable one)."""


class EvaluationTimeout(OptimizationError, TimeoutError):
    """A generation's evaluation batch did not finish inside the time budget."""

    def __init__(self, message: str, *, generation: Optional[int] = None, elapsed_sec: float = 0.0) -> None:
        super().__init__(message)
        self.generation = generation
        self.elapsed_sec = float(elapsed_sec)


class AlreadyTerminated(OptimizationError, RuntimeError):
    """Resume was requested although the termination condition already holds."""


class RemoteBatchError(OptimizationError):
    """Transport-level failure talking to the remote batch service."""


__all__ = [
    "OptimizationError",
    "InvalidSpec",
    "EvaluationTimeout",
    "AlreadyTerminated",
    "RemoteBatchError",
]
