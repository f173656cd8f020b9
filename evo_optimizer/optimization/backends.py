# evo_optimizer/optimization/backends.py
"""
Execution backends: run a batch of pending evaluations, with timeout + cancel.

Contract shared by every backend:
- submit(candidate, evaluator, window): queue work for an unscored candidate
- run_pending(timeout) -> bool: block until the batch finishes (True), the
  timeout elapses or cancel() stops it early (False; last_batch_cancelled
  tells the two apart). Outcomes are applied to candidates on the calling
  thread only; anything that arrives after the batch closed is discarded.
- cancel(): cooperative; unstarted work is skipped, running work is abandoned
- clear(): forget queued tasks and collected outcomes
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from evo_optimizer.optimization.candidate import Candidate, EvaluationResult, EvaluationWindow
from evo_optimizer.optimization.fitness import FILTERED_SCORE, FitnessEvaluator
from evo_optimizer.utils.training_logger import TrainingLogger

logger = logging.getLogger("optimization.backends")

# how often a blocked pool wait looks at the cancel flag
CANCEL_POLL_SEC = 0.05


@dataclass
class EvaluationOutcome:
    candidate_id: str
    window: EvaluationWindow
    score: float
    stats: Dict[str, float] = field(default_factory=dict)
    error_type: Optional[str] = None
    error_msg: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error_type is not None

    def apply(self, candidate: Candidate) -> None:
        error = f"{self.error_type}: {self.error_msg}" if self.failed else None
        candidate.score = float(self.score)
        candidate.result = EvaluationResult(
            stats=dict(self.stats), window=self.window, score=float(self.score), error=error
        )

    @classmethod
    def failure(cls, candidate_id: str, window: EvaluationWindow, error_type: str, error_msg: str) -> "EvaluationOutcome":
        return cls(candidate_id, window, FILTERED_SCORE, {}, error_type, error_msg)


def evaluate_candidate(
    evaluator: FitnessEvaluator,
    candidate_id: str,
    params: Dict[str, Any],
    window: EvaluationWindow,
) -> EvaluationOutcome:
    """Run one evaluation; evaluator failures become a FILTERED_SCORE outcome.

    Module-level so it pickles into process-pool workers.
    """
    try:
        stats, score = evaluator.evaluate(params, window)
    except Exception as exc:
        logger.warning("evaluation failed for %s: %s: %s", candidate_id, type(exc).__name__, exc)
        return EvaluationOutcome.failure(candidate_id, window, type(exc).__name__, str(exc))
    return EvaluationOutcome(candidate_id, window, float(score), dict(stats))


@dataclass
class EvaluationTask:
    candidate: Candidate
    evaluator: FitnessEvaluator
    window: EvaluationWindow


class ExecutionBackend:
    """Base class: task list + outcome map guarded by one lock."""

    name = "base"

    def __init__(self, *, training_logger: Optional[TrainingLogger] = None) -> None:
        self.training_logger = training_logger
        self._lock = threading.Lock()
        self._tasks: List[EvaluationTask] = []
        self._outcomes: Dict[int, EvaluationOutcome] = {}
        self._batch = 0
        self._cancel = threading.Event()
        self.is_running = False
        self.last_batch_cancelled = False

    # ----------------------------------------------------------- contract

    def submit(self, candidate: Candidate, evaluator: FitnessEvaluator, window: EvaluationWindow) -> None:
        if candidate.is_scored:
            return
        with self._lock:
            self._tasks.append(EvaluationTask(candidate, evaluator, window))

    def pending_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def run_pending(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            tasks, self._tasks = self._tasks, []
            self._batch += 1
            batch = self._batch
            self._outcomes = {}
        self.last_batch_cancelled = False
        if not tasks:
            return True

        self._cancel.clear()
        self.is_running = True
        started = time.monotonic()
        try:
            finished = self._run(tasks, batch, timeout)
        finally:
            self.is_running = False
            with self._lock:
                outcomes, self._outcomes = self._outcomes, {}
                # close the batch: late arrivals are dropped by _record
                self._batch += 1

        for idx, task in enumerate(tasks):
            outcome = outcomes.get(idx)
            if outcome is None:
                continue
            outcome.apply(task.candidate)
            if outcome.failed and self.training_logger is not None:
                self.training_logger.log("error", {
                    "context": {"candidate_id": task.candidate.id, "params": task.candidate.to_json_params()},
                    "error_type": outcome.error_type,
                    "error_msg": outcome.error_msg,
                })

        elapsed = time.monotonic() - started
        if self._cancel.is_set() and len(outcomes) < len(tasks):
            self.last_batch_cancelled = True
            finished = False
            logger.info(
                "%s backend: batch of %d cancelled after %.2fs (%d completed)",
                self.name, len(tasks), elapsed, len(outcomes),
            )
        elif not finished:
            logger.warning(
                "%s backend: batch of %d timed out after %.2fs (%d completed)",
                self.name, len(tasks), elapsed, len(outcomes),
            )
        else:
            logger.debug("%s backend: %d evaluations in %.2fs", self.name, len(tasks), elapsed)
        return finished

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def clear(self) -> None:
        with self._lock:
            self._tasks = []
            self._outcomes = {}
            self._batch += 1

    def close(self) -> None:
        self.clear()

    # ---------------------------------------------------------- internals

    def _record(self, batch: int, idx: int, outcome: EvaluationOutcome) -> None:
        with self._lock:
            if batch == self._batch:
                self._outcomes[idx] = outcome

    def _run(self, tasks: List[EvaluationTask], batch: int, timeout: Optional[float]) -> bool:
        raise NotImplementedError


class SequentialBackend(ExecutionBackend):
    """One evaluation at a time on the calling thread."""

    name = "linear"

    def _run(self, tasks: List[EvaluationTask], batch: int, timeout: Optional[float]) -> bool:
        started = time.monotonic()
        for idx, task in enumerate(tasks):
            if self._cancel.is_set():
                break
            outcome = evaluate_candidate(task.evaluator, task.candidate.id, task.candidate.to_params(), task.window)
            if timeout is not None and time.monotonic() - started > timeout:
                # finished past the budget: dropped, not retried
                return False
            self._record(batch, idx, outcome)
        return True


class ParallelBackend(ExecutionBackend):
    """Bounded local pool (threads or spawned processes)."""

    name = "parallel"

    def __init__(
        self,
        *,
        workers: Optional[int] = None,
        min_workers: int = 2,
        max_workers: int = 10,
        pool: Literal["thread", "process"] = "thread",
        training_logger: Optional[TrainingLogger] = None,
    ) -> None:
        super().__init__(training_logger=training_logger)
        if min_workers < 1 or max_workers < min_workers:
            raise ValueError(f"Bad worker bounds: min={min_workers} max={max_workers}")
        if pool not in ("thread", "process"):
            raise ValueError(f"Unknown pool kind: {pool}")
        self.workers = workers
        self.min_workers = int(min_workers)
        self.max_workers = int(max_workers)
        self.pool = pool

    def resolved_workers(self) -> int:
        want = self.workers if self.workers else (os.cpu_count() or self.min_workers)
        return max(self.min_workers, min(self.max_workers, int(want)))

    def _make_executor(self) -> Executor:
        n = self.resolved_workers()
        if self.pool == "process":
            return ProcessPoolExecutor(max_workers=n, mp_context=mp.get_context("spawn"))
        return ThreadPoolExecutor(max_workers=n, thread_name_prefix="evo-eval")

    def _thread_task(self, batch: int, idx: int, task: EvaluationTask) -> Optional[EvaluationOutcome]:
        if self._cancel.is_set():
            return None
        outcome = evaluate_candidate(task.evaluator, task.candidate.id, task.candidate.to_params(), task.window)
        self._record(batch, idx, outcome)
        return outcome

    def _collect(self, fut: Future, idx: int, batch: int, tasks: List[EvaluationTask]) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            # worker-level failure (e.g. unpicklable evaluator); isolate per candidate
            task = tasks[idx]
            self._record(batch, idx, EvaluationOutcome.failure(
                task.candidate.id, task.window, type(exc).__name__, str(exc)
            ))
            return
        outcome = fut.result()
        if outcome is not None:
            self._record(batch, idx, outcome)

    def _run(self, tasks: List[EvaluationTask], batch: int, timeout: Optional[float]) -> bool:
        executor = self._make_executor()
        futures: Dict[Future, int] = {}
        try:
            for idx, task in enumerate(tasks):
                if self.pool == "process":
                    fut = executor.submit(
                        evaluate_candidate, task.evaluator, task.candidate.id, task.candidate.to_params(), task.window
                    )
                else:
                    fut = executor.submit(self._thread_task, batch, idx, task)
                futures[fut] = idx

            deadline = None if timeout is None else time.monotonic() + timeout
            not_done = set(futures)
            while not_done and not self._cancel.is_set():
                pause = CANCEL_POLL_SEC
                if deadline is not None:
                    pause = min(pause, max(0.0, deadline - time.monotonic()))
                done, not_done = wait(not_done, timeout=pause, return_when=FIRST_COMPLETED)
                for fut in done:
                    self._collect(fut, futures[fut], batch, tasks)
                if not_done and deadline is not None and time.monotonic() >= deadline:
                    break
            for fut in not_done:
                fut.cancel()
            return not not_done
        finally:
            # running work is abandoned, not waited for
            executor.shutdown(wait=False, cancel_futures=True)


def make_backend(
    mode: str,
    *,
    workers: Optional[int] = None,
    min_workers: int = 2,
    max_workers: int = 10,
    pool: Literal["thread", "process"] = "thread",
    batch_client: Any = None,
    poll_interval: float = 1.0,
    settings: Optional[Dict[str, Any]] = None,
    training_logger: Optional[TrainingLogger] = None,
) -> ExecutionBackend:
    """Backend for an execution mode name: linear | parallel | remote."""
    mode = (mode or "linear").strip().lower()
    if mode in ("linear", "sequential"):
        return SequentialBackend(training_logger=training_logger)
    if mode == "parallel":
        return ParallelBackend(
            workers=workers, min_workers=min_workers, max_workers=max_workers,
            pool=pool, training_logger=training_logger,
        )
    if mode == "remote":
        from evo_optimizer.optimization.remote import RemoteBatchBackend

        if batch_client is None:
            raise ValueError("remote execution mode needs a batch client")
        return RemoteBatchBackend(
            batch_client, poll_interval=poll_interval, settings=settings, training_logger=training_logger
        )
    raise ValueError(f"Unknown execution mode: {mode}")


__all__ = [
    "EvaluationOutcome",
    "EvaluationTask",
    "ExecutionBackend",
    "SequentialBackend",
    "ParallelBackend",
    "evaluate_candidate",
    "make_backend",
]
