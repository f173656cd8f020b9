# evo_optimizer/config.py
"""
Run configuration: one object built once, then handed to every component.

load_config(path) reads a JSON file. Keys may be snake_case, kebab-case or
camelCase, flat or grouped under "evolution" / "walk_forward" /
"fitness_filter" / "remote". A .env file (python-dotenv) and these
environment variables override the file:
  EVO_REMOTE_URL, EVO_REMOTE_TOKEN, EVO_REMOTE_JOB, LOG_LEVEL, EVO_LOG_FILE
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from dotenv import load_dotenv

from evo_optimizer.optimization.backends import ExecutionBackend, make_backend
from evo_optimizer.optimization.candidate import GeneSpec, gene_spec_from_dict
from evo_optimizer.optimization.errors import InvalidSpec
from evo_optimizer.optimization.evolutionary import EvolutionConfig
from evo_optimizer.optimization.fitness import FitnessFilter, StatisticsFitness
from evo_optimizer.optimization.remote import HttpBatchClient
from evo_optimizer.optimization.walkforward import WalkForwardConfig
from evo_optimizer.utils.training_logger import TrainingLogger

logger = logging.getLogger("evo_optimizer.config")

DEFAULT_SIMULATOR = "evo_optimizer.simulators.sma_crossover.simulate"
DEFAULT_RUN_LOG = "storage/logs/optimizer_runs.jsonl"

# alternative spellings -> canonical snake_case key
_ALIASES: Dict[str, str] = {
    "max_threads": "max_workers",
    "min_threads": "min_workers",
    "minimum_trades": "min_trades",
    "enable_fitness_filter": "filter_enabled",
    "crossover_probability": "crossover_mix_probability",
    "in_sample_period": "in_sample_days",
    "step": "step_days",
    "score_key": "fitness_score",
    "algorithm_settings": "simulator_settings",
    "transaction_log": "run_log",
}


def _snake(key: str) -> str:
    s = str(key).strip().replace("-", "_")
    s = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", s)
    s = s.lower()
    return _ALIASES.get(s, s)


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_snake(k): v for k, v in data.items()}


def _to_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _to_date(v: Any) -> Optional[date]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return datetime.fromisoformat(str(v)).date()


def _pick(cls: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# --- Sections ----------------------------------------------------------------


@dataclass
class FitnessFilterConfig:
    filter_enabled: bool = True
    min_trades: Optional[float] = None
    max_drawdown: Optional[float] = None
    min_sharpe_ratio: Optional[float] = None
    include_negative_return: bool = True

    def to_filter(self) -> FitnessFilter:
        return FitnessFilter(
            min_trades=self.min_trades,
            max_drawdown=self.max_drawdown,
            min_sharpe_ratio=self.min_sharpe_ratio,
            include_negative_return=self.include_negative_return,
        )


@dataclass
class RemoteConfig:
    url: Optional[str] = None
    token: Optional[str] = None
    job_id: str = "evo-optimizer"
    poll_interval: float = 5.0
    request_timeout: float = 20.0

    def client(self) -> HttpBatchClient:
        if not self.url:
            raise ValueError("remote execution needs a url (config 'remote.url' or EVO_REMOTE_URL)")
        return HttpBatchClient(self.url, self.job_id, token=self.token, request_timeout=self.request_timeout)

    def to_log_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["token"] = "***" if self.token else None
        return data


@dataclass
class OptimizerConfig:
    genes: List[GeneSpec] = field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    simulator: str = DEFAULT_SIMULATOR
    simulator_settings: Dict[str, Any] = field(default_factory=dict)
    fitness_score: str = "SharpeRatio"
    execution_mode: Literal["linear", "parallel", "remote"] = "linear"
    pool: Literal["thread", "process"] = "thread"
    workers: Optional[int] = None
    min_workers: int = 2
    max_workers: int = 10
    walk_forward_enabled: bool = False
    run_log: str = DEFAULT_RUN_LOG
    log_file: Optional[str] = None
    log_level: Optional[str] = None
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    walk_forward: WalkForwardConfig = field(default_factory=WalkForwardConfig)
    fitness_filter: FitnessFilterConfig = field(default_factory=FitnessFilterConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)

    def validate(self) -> "OptimizerConfig":
        if not self.genes:
            raise InvalidSpec("Configuration declares no genes")
        for spec in self.genes:
            spec.validate(require_step=self.evolution.mode == "brute_force")
        if self.start_date is None or self.end_date is None:
            raise ValueError("start_date and end_date are required")
        if self.start_date > self.end_date:
            raise ValueError(f"start_date {self.start_date} is after end_date {self.end_date}")
        if self.execution_mode not in ("linear", "parallel", "remote"):
            raise ValueError(f"Unknown execution_mode: {self.execution_mode}")
        return self

    # ------------------------------------------------------------ builders

    def build_evaluator(self) -> StatisticsFitness:
        return StatisticsFitness.from_dotted(
            self.simulator,
            score_key=self.fitness_score,
            fitness_filter=self.fitness_filter.to_filter(),
            filter_enabled=self.fitness_filter.filter_enabled,
            settings=self.simulator_settings,
        )

    def build_backend(self, training_logger: Optional[TrainingLogger] = None) -> ExecutionBackend:
        client = self.remote.client() if self.execution_mode == "remote" else None
        settings = dict(self.simulator_settings)
        settings.setdefault("simulator", self.simulator)
        settings.setdefault("fitness_score", self.fitness_score)
        return make_backend(
            self.execution_mode,
            workers=self.workers,
            min_workers=self.min_workers,
            max_workers=self.max_workers,
            pool=self.pool,
            batch_client=client,
            poll_interval=self.remote.poll_interval,
            settings=settings,
            training_logger=training_logger,
        )

    def backend_factory(self, training_logger: Optional[TrainingLogger] = None) -> Callable[[], ExecutionBackend]:
        return lambda: self.build_backend(training_logger)

    def to_log_payload(self) -> Dict[str, Any]:
        return {
            "genes": [s.key for s in self.genes],
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "simulator": self.simulator,
            "fitness_score": self.fitness_score,
            "execution_mode": self.execution_mode,
            "pool": self.pool,
            "workers": [self.min_workers, self.max_workers, self.workers],
            "walk_forward_enabled": self.walk_forward_enabled,
            "evolution": self.evolution.to_log_payload(),
            "walk_forward": asdict(self.walk_forward),
            "fitness_filter": asdict(self.fitness_filter),
            "remote": self.remote.to_log_payload(),
        }


# --- Loading -----------------------------------------------------------------


def config_from_dict(data: Dict[str, Any]) -> OptimizerConfig:
    if not isinstance(data, dict):
        raise TypeError(f"Configuration must be a JSON object, got {type(data).__name__}")
    flat = _normalize(data)

    evo_raw = dict(flat)
    evo_raw.update(_normalize(flat.pop("evolution", None) or {}))
    if "mode" in evo_raw:
        evo_raw["mode"] = str(evo_raw["mode"]).strip().lower().replace("-", "_")
        if evo_raw["mode"] == "bruteforce":
            evo_raw["mode"] = "brute_force"

    wf_section = flat.pop("walk_forward", None)
    wf_raw = dict(flat)
    if isinstance(wf_section, dict):
        wf_raw.update(_normalize(wf_section))
        flat.setdefault("walk_forward_enabled", _to_bool(wf_section.get("enabled", True)))
    elif wf_section is not None:
        flat.setdefault("walk_forward_enabled", _to_bool(wf_section))

    filter_raw = dict(flat)
    filter_section = _normalize(flat.pop("fitness_filter", None) or {})
    if "enabled" in filter_section:
        filter_section["filter_enabled"] = filter_section.pop("enabled")
    filter_raw.update(filter_section)

    remote_raw = _normalize(flat.pop("remote", None) or {})

    # nested "fitness": {"scoreKey": ...}
    fitness_section = flat.pop("fitness", None)
    if isinstance(fitness_section, dict):
        fs = _normalize(fitness_section)
        if "fitness_score" in fs:
            flat["fitness_score"] = fs["fitness_score"]

    genes = [gene_spec_from_dict(g) for g in (flat.pop("genes", None) or [])]

    top = _pick(OptimizerConfig, flat)
    for section in ("genes", "evolution", "walk_forward", "fitness_filter", "remote"):
        top.pop(section, None)
    if "start_date" in top:
        top["start_date"] = _to_date(top["start_date"])
    if "end_date" in top:
        top["end_date"] = _to_date(top["end_date"])
    if "walk_forward_enabled" in top:
        top["walk_forward_enabled"] = _to_bool(top["walk_forward_enabled"])
    if "execution_mode" in top:
        top["execution_mode"] = str(top["execution_mode"]).strip().lower()

    filt = _pick(FitnessFilterConfig, filter_raw)
    for k in ("filter_enabled", "include_negative_return"):
        if k in filt:
            filt[k] = _to_bool(filt[k])

    return OptimizerConfig(
        genes=genes,
        evolution=EvolutionConfig(**_pick(EvolutionConfig, evo_raw)),
        walk_forward=WalkForwardConfig(**_pick(WalkForwardConfig, wf_raw)),
        fitness_filter=FitnessFilterConfig(**filt),
        remote=RemoteConfig(**_pick(RemoteConfig, remote_raw)),
        **top,
    )


def apply_env_overrides(cfg: OptimizerConfig) -> OptimizerConfig:
    cfg.remote.url = os.getenv("EVO_REMOTE_URL") or cfg.remote.url
    cfg.remote.token = os.getenv("EVO_REMOTE_TOKEN") or cfg.remote.token
    cfg.remote.job_id = os.getenv("EVO_REMOTE_JOB") or cfg.remote.job_id
    cfg.log_level = os.getenv("LOG_LEVEL") or cfg.log_level
    cfg.log_file = os.getenv("EVO_LOG_FILE") or cfg.log_file
    return cfg


def load_config(path: str | Path, *, use_env: bool = True, dotenv_path: Optional[str] = None) -> OptimizerConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config file {p} is not valid JSON: {exc}") from exc

    cfg = config_from_dict(data)
    if use_env:
        load_dotenv(dotenv_path)
        apply_env_overrides(cfg)
    logger.debug("loaded config from %s: %s", p, cfg.to_log_payload())
    return cfg


__all__ = [
    "OptimizerConfig",
    "FitnessFilterConfig",
    "RemoteConfig",
    "config_from_dict",
    "apply_env_overrides",
    "load_config",
]
