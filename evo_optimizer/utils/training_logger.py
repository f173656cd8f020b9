# evo_optimizer/utils/training_logger.py
from __future__ import annotations
import json
import time
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List


def _json_default(obj: Any) -> Any:
    # Decimal gene values, dates and sets show up in payloads
    if isinstance(obj, Decimal):
        return str(obj)
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    return repr(obj)


class TrainingLogger:
    """Append-only JSONL logger for search and walk-forward runs."""

    def __init__(self, log_file: str | Path, *, level: int = logging.INFO) -> None:
        self.path = Path(log_file)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger(f"evo.{self.path.name}")
        self._logger.setLevel(level)

    def _write(self, record: Dict[str, Any]) -> None:
        record.setdefault("ts", time.time())
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=_json_default) + "\n")

    def log(self, event: str, payload: Dict[str, Any] | None = None) -> None:
        rec = {"event": event, "payload": payload or {}}
        self._write(rec)

    def log_error(self, context: Dict[str, Any], err: BaseException) -> None:
        rec = {
            "event": "error",
            "payload": {
                "context": context,
                "error_type": type(err).__name__,
                "error_msg": str(err),
            },
        }
        self._logger.error("Optimizer error: %s", rec["payload"], exc_info=err)
        self._write(rec)

    def read(self) -> List[Dict[str, Any]]:
        """All records written so far (skips torn lines)."""
        if not self.path.exists():
            return []
        out: List[Dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return out
