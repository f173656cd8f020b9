# evo_optimizer/optimization/walkforward.py
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from evo_optimizer.optimization.backends import ExecutionBackend
from evo_optimizer.optimization.candidate import Candidate, EvaluationWindow, GeneSpec
from evo_optimizer.optimization.errors import EvaluationTimeout
from evo_optimizer.optimization.evolutionary import EvolutionEngine, coerce_config
from evo_optimizer.optimization.fitness import FitnessEvaluator
from evo_optimizer.utils.progress import ProgressCallback, noop_progress
from evo_optimizer.utils.training_logger import TrainingLogger

logger = logging.getLogger("optimization.walkforward")

BackendFactory = Callable[[], ExecutionBackend]


@dataclass
class WalkForwardConfig:
    in_sample_days: int = 30
    step_days: int = 10
    anchored: bool = False
    top_n: int = 10
    validation_timeout: Optional[float] = None


@dataclass(frozen=True)
class SearchWindow:
    """Inclusive in-sample dates + the validation segment right after them."""

    index: int
    in_sample_start: date
    in_sample_end: date
    validation_start: date
    validation_end: date

    @property
    def in_sample(self) -> EvaluationWindow:
        return EvaluationWindow(self.in_sample_start, self.in_sample_end)

    @property
    def validation(self) -> EvaluationWindow:
        return EvaluationWindow(self.validation_start, self.validation_end)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "window": self.index,
            "in_sample": self.in_sample.to_payload(),
            "validation": self.validation.to_payload(),
        }


def build_windows(start: date, end: date, in_sample_days: int, step_days: int, anchored: bool = False) -> List[SearchWindow]:
    """
    Windows advance by `step_days` while the in-sample end is before `end`.
    - in-sample end = in-sample start + in_sample_days - 1
    - validation = [in-sample end + 1, in-sample end + step_days]
    - anchored: the in-sample start stays at `start`
    """
    if in_sample_days < 1 or step_days < 1:
        raise ValueError("in_sample_days and step_days must be >= 1")
    if start + timedelta(days=in_sample_days + step_days - 1) > end:
        raise ValueError(
            f"Range {start}..{end} is shorter than in-sample ({in_sample_days}d) + step ({step_days}d)"
        )

    step = timedelta(days=step_days)
    ins_start = start
    ins_end = start + timedelta(days=in_sample_days - 1)
    out: List[SearchWindow] = []
    while ins_end < end:
        out.append(SearchWindow(
            index=len(out),
            in_sample_start=ins_start,
            in_sample_end=ins_end,
            validation_start=ins_end + timedelta(days=1),
            validation_end=ins_end + step,
        ))
        ins_end = ins_end + step
        if not anchored:
            ins_start = ins_start + step
    return out


@dataclass
class ValidationRecord:
    window: int
    candidate_id: str
    params: Dict[str, Any]
    in_sample_score: Optional[float]
    oos_score: Optional[float]
    in_sample: Dict[str, float]
    out_of_sample: Dict[str, float]
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


class WalkForwardDriver:
    """Runs an independent search per window, then validates its top candidates out of sample."""

    def __init__(
        self,
        specs: Sequence[GeneSpec],
        evaluator: FitnessEvaluator,
        backend_factory: BackendFactory,
        *,
        config: Optional[WalkForwardConfig] = None,
        evolution: Optional[Any] = None,
        progress_cb: Optional[ProgressCallback] = None,
        training_logger: Optional[TrainingLogger] = None,
    ) -> None:
        self.specs = list(specs)
        self.evaluator = evaluator
        unfiltered = getattr(evaluator, "unfiltered", None)
        self.validation_evaluator: FitnessEvaluator = unfiltered() if callable(unfiltered) else evaluator
        self.backend_factory = backend_factory
        self.config = config or WalkForwardConfig()
        self.evolution = coerce_config(evolution)
        self.progress_cb: ProgressCallback = progress_cb or noop_progress
        self.training_logger = training_logger
        self.engines: List[EvolutionEngine] = []

    def windows(self, start: date, end: date) -> List[SearchWindow]:
        c = self.config
        return build_windows(start, end, c.in_sample_days, c.step_days, c.anchored)

    # ------------------------------------------------------------ per window

    def _validate_one(self, candidate: Candidate, window: SearchWindow) -> Candidate:
        clone = candidate.clone()
        backend = self.backend_factory()
        try:
            backend.submit(clone, self.validation_evaluator, window.validation)
            if not backend.run_pending(self.config.validation_timeout):
                raise EvaluationTimeout(
                    f"Validation of {candidate.id} in window {window.index} timed out",
                    generation=None,
                )
        finally:
            backend.close()
        return clone

    def _validate_window(self, window: SearchWindow, top: List[Candidate]) -> List[ValidationRecord]:
        if not top:
            return []
        records: List[ValidationRecord] = []
        with ThreadPoolExecutor(max_workers=len(top), thread_name_prefix="evo-validate") as pool:
            futures = {pool.submit(self._validate_one, cand, window): cand for cand in top}
            for fut in as_completed(futures):
                cand = futures[fut]
                validated = fut.result()
                rec = ValidationRecord(
                    window=window.index,
                    candidate_id=cand.id,
                    params=cand.to_json_params(),
                    in_sample_score=cand.score,
                    oos_score=validated.score,
                    in_sample=dict(cand.result.stats) if cand.result else {},
                    out_of_sample=dict(validated.result.stats) if validated.result else {},
                    error=validated.result.error if validated.result else None,
                )
                payload = rec.to_payload()
                payload.update(window.to_payload())
                self.progress_cb("validation_completed", payload)
                if self.training_logger is not None:
                    self.training_logger.log("validation_completed", payload)
                records.append(rec)
        # report in in-sample rank order
        rank = {c.id: i for i, c in enumerate(top)}
        records.sort(key=lambda r: rank[r.candidate_id])
        return records

    def run_window(self, window: SearchWindow) -> Tuple[EvolutionEngine, List[ValidationRecord]]:
        engine = EvolutionEngine(
            self.specs,
            self.evaluator,
            self.backend_factory(),
            window.in_sample,
            config=self.evolution,
            progress_cb=self.progress_cb,
            training_logger=self.training_logger,
        )
        self.engines.append(engine)
        try:
            engine.start()
        finally:
            engine.backend.close()
        top = engine.profitable_candidates(self.config.top_n)
        logger.info(
            "window %d (%s..%s): %d generations, %d profitable, validating top %d",
            window.index, window.in_sample_start, window.in_sample_end,
            engine.generation_number, len(engine.profitable_candidates()), len(top),
        )
        return engine, self._validate_window(window, top)

    # ----------------------------------------------------------------- run

    def run(self, start: date, end: date) -> Dict[str, Any]:
        """
        Walk-forward over [start, end].
        Returns:
          {
            "config": {...},
            "windows": [{window bounds, generations, best, validations}, ...],
            "aggregate": {"oos_mean": {...}, "oos_median": {...}}
          }
        A fatal error in one window stops the run (re-raised after logging).
        """
        windows = self.windows(start, end)
        started = time.monotonic()
        window_rows: List[Dict[str, Any]] = []
        best_oos: List[Dict[str, float]] = []

        if self.training_logger is not None:
            self.training_logger.log("walkforward_meta", {
                "period": {"start": start.isoformat(), "end": end.isoformat()},
                "walk_forward": asdict(self.config),
                "windows": [w.to_payload() for w in windows],
            })

        for window in windows:
            n_engines = len(self.engines)
            try:
                engine, records = self.run_window(window)
            except Exception as exc:
                failed = self.engines[-1] if len(self.engines) > n_engines else None
                logger.error(
                    "walk-forward aborted in window %d at generation %s after %.1fs: %s",
                    window.index,
                    failed.generation_number if failed is not None else 0,
                    time.monotonic() - started,
                    exc,
                )
                raise

            best = engine.best_candidate
            window_rows.append({
                **window.to_payload(),
                "generations": engine.generation_number,
                "best": best.summary() if best is not None else None,
                "validations": [r.to_payload() for r in records],
            })
            if records:
                row = dict(records[0].out_of_sample)
                if records[0].oos_score is not None:
                    row["score"] = float(records[0].oos_score)
                best_oos.append(row)

        # OOS mean & median across windows (top validated candidate per window)
        agg_mean: Dict[str, float] = {}
        agg_median: Dict[str, float] = {}
        if best_oos:
            keys = sorted(set(k for d in best_oos for k in d.keys()))
            for k in keys:
                vals = [float(d[k]) for d in best_oos if isinstance(d.get(k), (int, float))]
                if not vals:
                    continue
                s = pd.Series(vals, dtype=float)
                agg_mean[k] = float(s.mean())
                agg_median[k] = float(s.median())

        return {
            "config": {
                "period": {"start": start.isoformat(), "end": end.isoformat()},
                "walk_forward": asdict(self.config),
                "evolution": self.evolution.to_log_payload(),
                "genes": [s.key for s in self.specs],
            },
            "windows": window_rows,
            "aggregate": {"oos_mean": agg_mean, "oos_median": agg_median},
        }


__all__ = [
    "WalkForwardConfig",
    "SearchWindow",
    "ValidationRecord",
    "WalkForwardDriver",
    "build_windows",
]
