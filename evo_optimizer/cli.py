#!/usr/bin/env python3
# evo_optimizer/cli.py
"""
Command line entry point.

  python -m evo_optimizer.cli CONFIG.json                  # one search over start..end
  python -m evo_optimizer.cli CONFIG.json --walk-forward   # walk-forward windows
  python -m evo_optimizer.cli CONFIG.json --work-unit UNIT.json --output OUT.json
                                                           # remote worker: evaluate one unit
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from evo_optimizer.config import OptimizerConfig, load_config
from evo_optimizer.optimization.candidate import EvaluationWindow
from evo_optimizer.optimization.errors import OptimizationError
from evo_optimizer.optimization.evolutionary import EvolutionEngine
from evo_optimizer.optimization.fitness import StatisticsFitness
from evo_optimizer.optimization.remote import WorkUnit, execute_work_unit
from evo_optimizer.optimization.walkforward import WalkForwardDriver
from evo_optimizer.utils.logging_setup import setup_logging
from evo_optimizer.utils.progress import console_progress, noop_progress
from evo_optimizer.utils.training_logger import TrainingLogger

logger = logging.getLogger("evo_optimizer.cli")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evolutionary parameter search with walk-forward validation.")
    parser.add_argument("config", help="Path to the JSON run configuration.")
    parser.add_argument("--walk-forward", action="store_true", help="Run walk-forward windows instead of one search.")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL.")
    parser.add_argument("--run-log", default=None, help="JSONL run log path (overrides config run_log).")
    parser.add_argument("--top", type=int, default=5, help="How many best candidates to print.")
    parser.add_argument("--quiet", action="store_true", help="No per-generation console progress.")
    parser.add_argument("--output", default=None, help="Write the result document as JSON here.")
    parser.add_argument("--work-unit", default=None, help="Evaluate one remote work unit JSON and exit.")
    return parser.parse_args(argv)


def _worker_evaluator(cfg: OptimizerConfig, unit: WorkUnit) -> StatisticsFitness:
    settings = dict(unit.settings)
    simulator = settings.pop("simulator", cfg.simulator)
    score_key = settings.pop("fitness_score", cfg.fitness_score)
    return StatisticsFitness.from_dotted(
        simulator,
        score_key=score_key,
        fitness_filter=cfg.fitness_filter.to_filter(),
        filter_enabled=cfg.fitness_filter.filter_enabled,
        settings=settings,
    )


def run_work_unit(cfg: OptimizerConfig, unit_path: str, output: Optional[str]) -> Dict[str, Any]:
    unit = WorkUnit.from_json(Path(unit_path).read_text(encoding="utf-8"))
    doc = execute_work_unit(unit, _worker_evaluator(cfg, unit))
    out = Path(output or unit.output_name)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(doc, indent=2), encoding="utf-8")
    logger.info("work unit %s -> %s (score=%s)", unit.correlation_id, out, doc.get("score"))
    return doc


def run_search(cfg: OptimizerConfig, training_logger: TrainingLogger, progress_cb) -> Dict[str, Any]:
    window = EvaluationWindow(cfg.start_date, cfg.end_date)  # type: ignore[arg-type]
    engine = EvolutionEngine(
        cfg.genes,
        cfg.build_evaluator(),
        cfg.build_backend(training_logger),
        window,
        config=cfg.evolution,
        progress_cb=progress_cb,
        training_logger=training_logger,
    )
    try:
        engine.start()
    finally:
        engine.backend.close()
    return {
        "config": cfg.to_log_payload(),
        "state": engine.state.value,
        "generations": engine.generation_number,
        "best": engine.best_candidate.summary() if engine.best_candidate else None,
        "profitable": [c.summary() for c in engine.profitable_candidates()],
    }


def run_walk_forward(cfg: OptimizerConfig, training_logger: TrainingLogger, progress_cb) -> Dict[str, Any]:
    driver = WalkForwardDriver(
        cfg.genes,
        cfg.build_evaluator(),
        cfg.backend_factory(training_logger),
        config=cfg.walk_forward,
        evolution=cfg.evolution,
        progress_cb=progress_cb,
        training_logger=training_logger,
    )
    return driver.run(cfg.start_date, cfg.end_date)  # type: ignore[arg-type]


def _print_summary(result: Dict[str, Any], top: int) -> None:
    if "windows" in result:
        for w in result["windows"]:
            print(f"# window {w['window']}: in-sample {w['in_sample']} validation {w['validation']}")
            for v in w["validations"][:top]:
                print(f"  {v['candidate_id'][:8]} is={v['in_sample_score']} oos={v['oos_score']} {v['params']}")
        print("# OOS aggregate (mean):", result["aggregate"]["oos_mean"])
        return
    print(f"# state={result['state']} generations={result['generations']}")
    for c in result["profitable"][:top]:
        print(f"  {c['id'][:8]} score={c['score']} {c['params']}")


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    cfg = load_config(args.config)
    setup_logging(args.log_level or cfg.log_level, cfg.log_file)

    if args.work_unit:
        run_work_unit(cfg, args.work_unit, args.output)
        return 0

    if args.walk_forward:
        cfg.walk_forward_enabled = True
    progress_cb = noop_progress if args.quiet else console_progress

    try:
        cfg.validate()
        training_logger = TrainingLogger(args.run_log or cfg.run_log)
        training_logger.log("run_config", cfg.to_log_payload())
        if cfg.walk_forward_enabled:
            result = run_walk_forward(cfg, training_logger, progress_cb)
        else:
            result = run_search(cfg, training_logger, progress_cb)
    except OptimizationError as exc:
        logger.error("run failed: %s", exc)
        return 2

    _print_summary(result, args.top)
    if args.output:
        Path(args.output).write_text(json.dumps(result, indent=2, default=str), encoding="utf-8")
    return 0


if __name__ == "__main__":
    sys.exit(main())
