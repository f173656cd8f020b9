# evo_optimizer/optimization/remote.py
"""
Remote batch execution.

Each pending candidate becomes a self-contained WorkUnit (params + window +
correlation id + evaluator settings). The backend submits units to a
BatchClient, polls their state (queued|running|succeeded|failed) and fetches
each finished unit's statistics by correlation id. In-flight units never
exceed the client's advertised capacity. A failed unit scores as a failure;
the rest of the batch carries on.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple

import requests

from evo_optimizer.optimization.backends import (
    EvaluationOutcome,
    EvaluationTask,
    ExecutionBackend,
    evaluate_candidate,
)
from evo_optimizer.optimization.candidate import EvaluationWindow
from evo_optimizer.optimization.errors import RemoteBatchError
from evo_optimizer.optimization.fitness import FitnessEvaluator
from evo_optimizer.utils.training_logger import TrainingLogger

logger = logging.getLogger("optimization.remote")

TASK_STATES = ("queued", "running", "succeeded", "failed")
TERMINAL_STATES = ("succeeded", "failed")


@dataclass
class WorkUnit:
    correlation_id: str
    params: Dict[str, Any]
    window: EvaluationWindow
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def task_id(self) -> str:
        return f"task_{self.correlation_id}"

    @property
    def output_name(self) -> str:
        return f"output_{self.correlation_id}.json"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "params": dict(self.params),
            "start": self.window.start.isoformat(),
            "end": self.window.end.isoformat(),
            "settings": dict(self.settings),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "WorkUnit":
        return cls(
            correlation_id=str(data["correlation_id"]),
            params=dict(data.get("params") or {}),
            window=EvaluationWindow.of(data["start"], data["end"]),
            settings=dict(data.get("settings") or {}),
        )

    @classmethod
    def from_json(cls, text: str) -> "WorkUnit":
        return cls.from_payload(json.loads(text))

    @classmethod
    def from_task(cls, task: EvaluationTask, settings: Optional[Dict[str, Any]] = None) -> "WorkUnit":
        return cls(
            correlation_id=task.candidate.id,
            params=task.candidate.to_json_params(),
            window=task.window,
            settings=dict(settings or {}),
        )

    def decoded_params(self) -> Dict[str, Any]:
        """JSON params back to int/Decimal (decimal genes travel as strings)."""
        out: Dict[str, Any] = {}
        for k, v in self.params.items():
            if isinstance(v, bool):
                out[k] = v
            elif isinstance(v, int):
                out[k] = v
            else:
                out[k] = Decimal(str(v))
        return out


def execute_work_unit(unit: WorkUnit, evaluator: FitnessEvaluator) -> Dict[str, Any]:
    """Worker side: evaluate one unit and return its JSON-ready result document."""
    outcome = evaluate_candidate(evaluator, unit.correlation_id, unit.decoded_params(), unit.window)
    doc: Dict[str, Any] = {
        "correlation_id": unit.correlation_id,
        "stats": dict(outcome.stats),
        "score": outcome.score,
    }
    if outcome.failed:
        doc["error_type"] = outcome.error_type
        doc["error_msg"] = outcome.error_msg
    return doc


class BatchClient(Protocol):
    def capacity(self) -> int:
        ...

    def submit(self, unit: WorkUnit) -> str:
        ...

    def status(self, task_id: str) -> str:
        ...

    def fetch_result(self, correlation_id: str) -> Dict[str, Any]:
        ...

    def cancel(self, task_id: str) -> None:
        ...


class HttpBatchClient:
    """BatchClient over a small JSON/HTTP API.

    GET    {base}/jobs/{job}/capacity          -> {"capacity": n}
    POST   {base}/jobs/{job}/tasks             -> {"task_id": "..."}
    GET    {base}/jobs/{job}/tasks/{task_id}   -> {"state": "queued|running|succeeded|failed"}
    DELETE {base}/jobs/{job}/tasks/{task_id}
    GET    {base}/results/{correlation_id}     -> result document
    """

    def __init__(
        self,
        base_url: str,
        job_id: str,
        *,
        token: Optional[str] = None,
        request_timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.job_id = job_id
        self.request_timeout = float(request_timeout)
        self.session = session or requests.Session()
        self.session.headers.setdefault("Accept", "application/json")
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            r = self.session.request(method, url, timeout=self.request_timeout, **kwargs)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteBatchError(f"{method} {url} failed: {exc}") from exc
        return r

    def _json(self, r: requests.Response) -> Dict[str, Any]:
        try:
            data = r.json()
        except ValueError as exc:
            raise RemoteBatchError(f"Non-JSON response from {r.url}") from exc
        if not isinstance(data, dict):
            raise RemoteBatchError(f"Unexpected response shape from {r.url}")
        return data

    def capacity(self) -> int:
        data = self._json(self._request("GET", f"jobs/{self.job_id}/capacity"))
        return max(1, int(data.get("capacity", 1)))

    def submit(self, unit: WorkUnit) -> str:
        payload = unit.to_payload()
        payload["task_id"] = unit.task_id
        payload["output"] = unit.output_name
        data = self._json(self._request("POST", f"jobs/{self.job_id}/tasks", json=payload))
        return str(data.get("task_id") or unit.task_id)

    def status(self, task_id: str) -> str:
        data = self._json(self._request("GET", f"jobs/{self.job_id}/tasks/{task_id}"))
        state = str(data.get("state", "")).lower()
        if state not in TASK_STATES:
            raise RemoteBatchError(f"Unknown task state for {task_id}: {state!r}")
        return state

    def fetch_result(self, correlation_id: str) -> Dict[str, Any]:
        return self._json(self._request("GET", f"results/{correlation_id}"))

    def cancel(self, task_id: str) -> None:
        self._request("DELETE", f"jobs/{self.job_id}/tasks/{task_id}")


def _outcome_from_document(task: EvaluationTask, doc: Dict[str, Any]) -> EvaluationOutcome:
    cid = task.candidate.id
    if doc.get("error_type"):
        return EvaluationOutcome.failure(cid, task.window, str(doc["error_type"]), str(doc.get("error_msg", "")))
    stats = {str(k): float(v) for k, v in (doc.get("stats") or {}).items()}
    score = doc.get("score")
    if score is None:
        # stats-only result: score it locally
        scorer = getattr(task.evaluator, "score", None)
        if scorer is None:
            return EvaluationOutcome.failure(cid, task.window, "MissingScore", "result has no score")
        score = scorer(stats)
    return EvaluationOutcome(cid, task.window, float(score), stats)


class RemoteBatchBackend(ExecutionBackend):
    name = "remote"

    def __init__(
        self,
        client: BatchClient,
        *,
        poll_interval: float = 1.0,
        settings: Optional[Dict[str, Any]] = None,
        training_logger: Optional[TrainingLogger] = None,
    ) -> None:
        super().__init__(training_logger=training_logger)
        self.client = client
        self.poll_interval = max(0.0, float(poll_interval))
        self.settings = dict(settings or {})

    def _cancel_inflight(self, inflight: Dict[str, Tuple[int, EvaluationTask, WorkUnit]]) -> None:
        for task_id in list(inflight):
            try:
                self.client.cancel(task_id)
            except RemoteBatchError as exc:
                logger.warning("cancel of %s failed: %s", task_id, exc)
        inflight.clear()

    def _run(self, tasks: List[EvaluationTask], batch: int, timeout: Optional[float]) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        queue: Deque[Tuple[int, EvaluationTask]] = deque(enumerate(tasks))
        inflight: Dict[str, Tuple[int, EvaluationTask, WorkUnit]] = {}
        capacity = max(1, int(self.client.capacity()))

        while queue or inflight:
            if self._cancel.is_set():
                self._cancel_inflight(inflight)
                return False

            while queue and len(inflight) < capacity:
                idx, task = queue.popleft()
                unit = WorkUnit.from_task(task, self.settings)
                try:
                    task_id = self.client.submit(unit)
                except RemoteBatchError as exc:
                    logger.warning("submit of %s failed: %s", unit.correlation_id, exc)
                    self._record(batch, idx, EvaluationOutcome.failure(
                        task.candidate.id, task.window, type(exc).__name__, str(exc)
                    ))
                    continue
                inflight[task_id] = (idx, task, unit)

            for task_id in list(inflight):
                idx, task, unit = inflight[task_id]
                try:
                    state = self.client.status(task_id)
                except RemoteBatchError as exc:
                    # transient; polled again next round
                    logger.warning("status of %s failed: %s", task_id, exc)
                    continue
                if state == "succeeded":
                    try:
                        outcome = _outcome_from_document(task, self.client.fetch_result(unit.correlation_id))
                    except (RemoteBatchError, ValueError, TypeError) as exc:
                        outcome = EvaluationOutcome.failure(task.candidate.id, task.window, type(exc).__name__, str(exc))
                    self._record(batch, idx, outcome)
                    del inflight[task_id]
                elif state == "failed":
                    logger.warning("remote task %s failed", task_id)
                    self._record(batch, idx, EvaluationOutcome.failure(
                        task.candidate.id, task.window, "RemoteTaskFailed", f"task {task_id} failed"
                    ))
                    del inflight[task_id]

            if not queue and not inflight:
                break
            if deadline is not None and time.monotonic() >= deadline:
                self._cancel_inflight(inflight)
                return False
            pause = self.poll_interval
            if deadline is not None:
                pause = min(pause, max(0.0, deadline - time.monotonic()))
            if pause:
                time.sleep(pause)
        return True


__all__ = [
    "TASK_STATES",
    "WorkUnit",
    "BatchClient",
    "HttpBatchClient",
    "RemoteBatchBackend",
    "execute_work_unit",
]
