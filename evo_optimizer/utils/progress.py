# evo_optimizer/utils/progress.py
from __future__ import annotations
from typing import Callable, Dict, Any

# Public type alias: a function taking (event, payload)
ProgressCallback = Callable[[str, Dict[str, Any]], None]

_CONSOLE_KEYS = (
    "generation", "window", "size", "fruitless", "best_score",
    "candidate_id", "in_sample_score", "oos_score", "elapsed_sec",
)


def console_progress(event: str, payload: Dict[str, Any]) -> None:
    """Lightweight progress sink for terminal runs (safe in subprocesses)."""
    try:
        key_bits = {k: payload.get(k) for k in _CONSOLE_KEYS if k in payload}
        print(f"[{event}] {key_bits}")
    except Exception:
        # Never let progress crash the caller
        pass


def noop_progress(event: str, payload: Dict[str, Any]) -> None:
    return


def collecting_progress(sink: list) -> ProgressCallback:
    """Return a callback that appends (event, payload) tuples to `sink`."""
    def cb(event: str, payload: Dict[str, Any]) -> None:
        sink.append((event, dict(payload)))

    return cb


__all__ = ["ProgressCallback", "console_progress", "noop_progress", "collecting_progress"]
