# evo_optimizer/optimization/fitness.py
"""
Fitness integration: simulator statistics -> scalar score.

- Evaluator contract: evaluate(params, window) -> (stats, score); higher is better.
- StatisticsFitness wraps a simulator callable
      simulate(params, start, end, **settings) -> {statistic: number}
  and scores a configured statistic (SharpeRatio, TotalNetProfit, or any key).
- The FitnessFilter only runs on positive raw scores ("compute score first, then
  filter"); rejected results get FILTERED_SCORE.
"""

from __future__ import annotations

import copy
import importlib
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from evo_optimizer.optimization.candidate import EvaluationWindow

logger = logging.getLogger("optimization.fitness")

# Sentinel for filtered / invalid results. Never positive, so never "profitable".
FILTERED_SCORE = -1e9

FITNESS_SCORES = ("SharpeRatio", "TotalNetProfit")

# Display name -> canonical statistic key
STATISTIC_BINDING: Dict[str, str] = {
    "Total Trades": "TotalNumberOfTrades",
    "Average Win": "AverageWinRate",
    "Average Loss": "AverageLossRate",
    "Compounding Annual Return": "CompoundingAnnualReturn",
    "Drawdown": "Drawdown",
    "Expectancy": "Expectancy",
    "Net Profit": "TotalNetProfit",
    "Sharpe Ratio": "SharpeRatio",
    "Loss Rate": "LossRate",
    "Win Rate": "WinRate",
    "Profit-Loss Ratio": "ProfitLossRatio",
    "Alpha": "Alpha",
    "Beta": "Beta",
    "Annual Standard Deviation": "AnnualStandardDeviation",
    "Annual Variance": "AnnualVariance",
    "Information Ratio": "InformationRatio",
    "Tracking Error": "TrackingError",
    "Treynor Ratio": "TreynorRatio",
    "Total Fees": "TotalFees",
}

Simulator = Callable[..., Mapping[str, Any]]


class FitnessEvaluator(Protocol):
    def evaluate(self, params: Dict[str, Any], window: EvaluationWindow) -> Tuple[Dict[str, float], float]:
        ...


def import_callable(dotted: str):
    mod_name, _, attr = dotted.rpartition(".")
    if not mod_name or not attr:
        raise ValueError(f"Bad dotted path: {dotted}")
    mod = importlib.import_module(mod_name)
    fn = getattr(mod, attr, None)
    if fn is None:
        raise AttributeError(f"{dotted} not found")
    return fn


def _to_float(x: Any) -> Optional[float]:
    if isinstance(x, str):
        x = x.strip().rstrip("%").lstrip("$").replace(",", "")
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    if math.isnan(v):
        return None
    return v


def normalize_statistics(raw: Mapping[str, Any]) -> Dict[str, float]:
    """Canonical keys + float values. Non-numeric entries are dropped."""
    out: Dict[str, float] = {}
    for key, value in (raw or {}).items():
        name = str(key).strip()
        canonical = STATISTIC_BINDING.get(name, name)
        v = _to_float(value)
        if v is not None:
            out[canonical] = v
    return out


# ------------------------------- Filter ----------------------------------


@dataclass
class FitnessFilter:
    """Rejects false-positive results (too few trades, deep drawdown, ...).

    Each rule only looks at a statistic the simulator reported; a missing
    statistic never rejects.
    """

    min_trades: Optional[float] = None
    max_drawdown: Optional[float] = None
    min_sharpe_ratio: Optional[float] = None
    include_negative_return: bool = True

    def rejections(self, stats: Mapping[str, float]) -> List[str]:
        reasons: List[str] = []
        trades = stats.get("TotalNumberOfTrades")
        annual = stats.get("CompoundingAnnualReturn")
        drawdown = stats.get("Drawdown")
        sharpe = stats.get("SharpeRatio")
        if not self.include_negative_return and annual is not None and annual < 0:
            reasons.append("negative_return")
        if trades is not None:
            if self.min_trades is not None and trades < self.min_trades:
                reasons.append("min_trades")
            if trades == 0:
                reasons.append("no_trades")
        if self.max_drawdown is not None and drawdown is not None and abs(drawdown) > self.max_drawdown:
            reasons.append("max_drawdown")
        if self.min_sharpe_ratio is not None and sharpe is not None and sharpe < self.min_sharpe_ratio:
            reasons.append("min_sharpe_ratio")
        if stats.get("LossRate") == 1:
            reasons.append("loss_rate")
        return reasons

    def is_success(self, stats: Mapping[str, float]) -> bool:
        return not self.rejections(stats)

    def to_log_payload(self) -> Dict[str, Any]:
        return asdict(self)


# ------------------------------ Evaluator --------------------------------


class StatisticsFitness:
    """Default evaluator: run the simulator, score one statistic, then filter."""

    def __init__(
        self,
        simulate: Simulator,
        *,
        score_key: str = "SharpeRatio",
        fitness_filter: Optional[FitnessFilter] = None,
        filter_enabled: bool = True,
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not callable(simulate):
            raise TypeError("simulate must be callable")
        self.simulate = simulate
        self.score_key = STATISTIC_BINDING.get(score_key, score_key)
        self.fitness_filter = fitness_filter
        self.filter_enabled = bool(filter_enabled)
        self.settings = dict(settings or {})

    @classmethod
    def from_dotted(cls, dotted: str, **kwargs: Any) -> "StatisticsFitness":
        return cls(import_callable(dotted), **kwargs)

    def score(self, stats: Mapping[str, float]) -> float:
        if self.score_key not in stats:
            raise KeyError(f"Simulator output has no '{self.score_key}' statistic")
        raw = float(stats[self.score_key])
        if raw > 0 and self.filter_enabled and self.fitness_filter is not None:
            if not self.fitness_filter.is_success(stats):
                return FILTERED_SCORE
        return raw

    def evaluate(self, params: Dict[str, Any], window: EvaluationWindow) -> Tuple[Dict[str, float], float]:
        raw = self.simulate(dict(params), window.start, window.end, **self.settings)
        stats = normalize_statistics(raw)
        score = self.score(stats)
        logger.debug("params=%s window=%s..%s score=%s", params, window.start, window.end, score)
        return stats, score

    def unfiltered(self) -> "StatisticsFitness":
        clone = copy.copy(self)
        clone.filter_enabled = False
        return clone


__all__ = [
    "FILTERED_SCORE",
    "FITNESS_SCORES",
    "STATISTIC_BINDING",
    "FitnessEvaluator",
    "FitnessFilter",
    "StatisticsFitness",
    "import_callable",
    "normalize_statistics",
]
