from __future__ import annotations

import threading
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from evo_optimizer.optimization.candidate import EvaluationWindow, GeneSpec
from evo_optimizer.optimization.remote import WorkUnit, execute_work_unit

WINDOW = EvaluationWindow.of("2021-01-01", "2021-03-31")


def int_spec(key: str, lo: int, hi: int, step: Optional[int] = None) -> GeneSpec:
    return GeneSpec(key=key, min_int=lo, max_int=hi, step=Decimal(step) if step is not None else None)


def dec_spec(key: str, lo: str, hi: str, precision: Optional[int] = None, step: Optional[str] = None) -> GeneSpec:
    return GeneSpec(
        key=key,
        min_decimal=Decimal(lo),
        max_decimal=Decimal(hi),
        precision=precision,
        step=Decimal(step) if step is not None else None,
    )


class LinearEvaluator:
    """score = sum of params / 10 (+ offset); deterministic and picklable."""

    def __init__(self, offset: float = 0.0) -> None:
        self.offset = offset
        self.calls = 0
        self._lock = threading.Lock()

    def __getstate__(self) -> Dict[str, Any]:
        return {"offset": self.offset}

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__init__(state["offset"])

    def evaluate(self, params: Dict[str, Any], window: EvaluationWindow) -> Tuple[Dict[str, float], float]:
        with self._lock:
            self.calls += 1
        score = sum(float(v) for v in params.values()) / 10.0 + self.offset
        return {"SharpeRatio": score, "TotalNumberOfTrades": 10.0}, score


class SlowEvaluator(LinearEvaluator):
    def __init__(self, delay: float = 0.3) -> None:
        super().__init__()
        self.delay = delay

    def evaluate(self, params, window):
        time.sleep(self.delay)
        return super().evaluate(params, window)


class FailingEvaluator(LinearEvaluator):
    """Raises for candidates whose `x` gene equals `bad_x`."""

    def __init__(self, bad_x: int) -> None:
        super().__init__()
        self.bad_x = bad_x

    def evaluate(self, params, window):
        if int(params["x"]) == self.bad_x:
            raise ValueError(f"simulator crashed for x={self.bad_x}")
        return super().evaluate(params, window)


class InMemoryBatchClient:
    """BatchClient fake: units run on the first status poll after submission."""

    def __init__(self, evaluator: Any, *, capacity: int = 2, fail_ids: Optional[Set[str]] = None,
                 never_finish: bool = False) -> None:
        self.evaluator = evaluator
        self._capacity = capacity
        self.fail_ids = set(fail_ids or ())
        self.never_finish = never_finish
        self.units: Dict[str, WorkUnit] = {}
        self.states: Dict[str, str] = {}
        self.results: Dict[str, Dict[str, Any]] = {}
        self.cancelled: List[str] = []
        self.max_in_flight = 0

    def _in_flight(self) -> int:
        return sum(1 for s in self.states.values() if s in ("queued", "running"))

    def capacity(self) -> int:
        return self._capacity

    def submit(self, unit: WorkUnit) -> str:
        # round-trip through JSON like a real queue would
        unit = WorkUnit.from_json(unit.to_json())
        self.units[unit.task_id] = unit
        self.states[unit.task_id] = "queued"
        self.max_in_flight = max(self.max_in_flight, self._in_flight())
        return unit.task_id

    def status(self, task_id: str) -> str:
        state = self.states[task_id]
        if state == "queued":
            self.states[task_id] = "running"
            return "running"
        if state == "running" and not self.never_finish:
            unit = self.units[task_id]
            if unit.correlation_id in self.fail_ids:
                self.states[task_id] = "failed"
            else:
                self.results[unit.correlation_id] = execute_work_unit(unit, self.evaluator)
                self.states[task_id] = "succeeded"
        return self.states[task_id]

    def fetch_result(self, correlation_id: str) -> Dict[str, Any]:
        return self.results[correlation_id]

    def cancel(self, task_id: str) -> None:
        self.cancelled.append(task_id)
        self.states[task_id] = "failed"


class CancellingEvaluator(LinearEvaluator):
    """Calls `backend.cancel()` from inside the first evaluation it runs.

    Every later evaluation sleeps `delay` first, so concurrent workers are
    still busy when the cancel lands.
    """

    def __init__(self, delay: float = 0.0) -> None:
        super().__init__()
        self.delay = delay
        self.backend: Any = None
        self._fired = False

    def evaluate(self, params, window):
        with self._lock:
            first, self._fired = not self._fired, True
        if not first and self.delay:
            time.sleep(self.delay)
        result = super().evaluate(params, window)
        if first and self.backend is not None:
            self.backend.cancel()
        return result
