"""Tests for walk-forward windowing and the out-of-sample validation driver."""
from __future__ import annotations

from datetime import date

import pytest

from evo_optimizer.optimization.backends import SequentialBackend
from evo_optimizer.optimization.errors import EvaluationTimeout
from evo_optimizer.optimization.fitness import FitnessFilter, StatisticsFitness
from evo_optimizer.optimization.walkforward import (
    WalkForwardConfig,
    WalkForwardDriver,
    build_windows,
)
from evo_optimizer.utils.progress import collecting_progress
from evo_optimizer.utils.training_logger import TrainingLogger
from tests._optimizer_test_utils import SlowEvaluator, int_spec

SPECS = [int_spec("x", 1, 50), int_spec("y", 1, 50)]
EVOLUTION = {
    "population_size": 4,
    "generation_max_size": 6,
    "generations": 2,
    "stagnation_generations": None,
    "seed": 7,
}


def test_rolling_windows_match_calendar_arithmetic() -> None:
    windows = build_windows(date(2021, 1, 1), date(2021, 3, 31), 30, 10)
    first, second = windows[0], windows[1]
    assert (first.in_sample_start, first.in_sample_end) == (date(2021, 1, 1), date(2021, 1, 30))
    assert (first.validation_start, first.validation_end) == (date(2021, 1, 31), date(2021, 2, 9))
    assert second.in_sample_start == date(2021, 1, 11)
    assert second.in_sample_end == date(2021, 2, 9)
    assert all(w.in_sample_end < date(2021, 3, 31) for w in windows)
    assert [w.index for w in windows] == list(range(len(windows)))
    assert len(windows) == 6


def test_anchored_windows_keep_the_start() -> None:
    windows = build_windows(date(2021, 1, 1), date(2021, 3, 31), 30, 10, anchored=True)
    assert {w.in_sample_start for w in windows} == {date(2021, 1, 1)}
    assert windows[2].in_sample_end == date(2021, 2, 19)


def test_range_too_short_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_windows(date(2021, 1, 1), date(2021, 1, 20), 30, 10)
    with pytest.raises(ValueError):
        build_windows(date(2021, 1, 1), date(2021, 3, 1), 0, 10)


def window_sensitive_simulator(params, start, end, **_settings):
    # long (in-sample) windows trade a lot; short validation windows barely trade
    trades = 10 if (end - start).days >= 20 else 1
    return {"SharpeRatio": (params["x"] + params["y"]) / 100.0, "TotalNumberOfTrades": trades}


def make_driver(events, training_logger=None, evaluator=None, evolution=None):
    evaluator = evaluator or StatisticsFitness(
        window_sensitive_simulator, fitness_filter=FitnessFilter(min_trades=5)
    )
    return WalkForwardDriver(
        SPECS,
        evaluator,
        SequentialBackend,
        config=WalkForwardConfig(in_sample_days=30, step_days=10, top_n=3),
        evolution=evolution or EVOLUTION,
        progress_cb=collecting_progress(events),
        training_logger=training_logger,
    )


def test_driver_validates_top_candidates_without_filter(tmp_path) -> None:
    events = []
    training_logger = TrainingLogger(tmp_path / "wf.jsonl")
    driver = make_driver(events, training_logger)
    result = driver.run(date(2021, 1, 1), date(2021, 2, 28))

    assert len(result["windows"]) == 3
    assert len(driver.engines) == 3
    for row in result["windows"]:
        validations = row["validations"]
        assert 1 <= len(validations) <= 3
        in_sample_scores = [v["in_sample_score"] for v in validations]
        assert in_sample_scores == sorted(in_sample_scores, reverse=True)
        for v in validations:
            # the filter would reject one trade; validation scores the raw statistic
            assert v["oos_score"] == pytest.approx(v["in_sample_score"])
            assert v["out_of_sample"]["TotalNumberOfTrades"] == 1

    validated = [p for e, p in events if e == "validation_completed"]
    assert len(validated) == sum(len(r["validations"]) for r in result["windows"])
    assert {p["candidate_id"] for p in validated} <= {
        c.id for engine in driver.engines for c in engine.profitable_candidates()
    }

    assert "SharpeRatio" in result["aggregate"]["oos_mean"]
    assert "score" in result["aggregate"]["oos_median"]

    logged = [r["event"] for r in training_logger.read()]
    assert logged[0] == "walkforward_meta"
    assert logged.count("validation_completed") == len(validated)
    assert logged.count("session_meta") == 3


def test_each_window_searches_its_own_period() -> None:
    events = []
    driver = make_driver(events)
    driver.run(date(2021, 1, 1), date(2021, 2, 28))
    starts = [engine.window.start for engine in driver.engines]
    assert starts == [date(2021, 1, 1), date(2021, 1, 11), date(2021, 1, 21)]


def test_timeout_aborts_the_whole_run() -> None:
    driver = make_driver(
        [],
        evaluator=SlowEvaluator(0.2),
        evolution={**EVOLUTION, "evaluation_timeout": 0.05},
    )
    with pytest.raises(EvaluationTimeout):
        driver.run(date(2021, 1, 1), date(2021, 2, 28))
    assert len(driver.engines) == 1
