"""Tests for the bundled moving-average crossover demo simulator."""
from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from evo_optimizer.optimization.candidate import EvaluationWindow
from evo_optimizer.optimization.fitness import StatisticsFitness
from evo_optimizer.simulators.sma_crossover import simulate, synthetic_prices

START, END = date(2021, 1, 1), date(2021, 6, 30)


def test_price_path_is_deterministic_and_prefix_stable() -> None:
    long = synthetic_prices(END, seed=3)
    short = synthetic_prices(date(2021, 3, 31), seed=3)
    assert (long.loc[short.index] == short).all()
    assert not synthetic_prices(END, seed=4).equals(long)


def test_simulate_reports_core_statistics() -> None:
    stats = simulate({"fast": 5, "slow": 20, "stop_loss": Decimal("0.05")}, START, END, seed=3)
    for key in ("SharpeRatio", "TotalNetProfit", "Drawdown", "TotalNumberOfTrades", "WinRate", "LossRate"):
        assert key in stats
    assert stats["TotalNumberOfTrades"] >= 0
    assert 0.0 <= stats["WinRate"] <= 1.0
    assert stats == simulate({"fast": 5, "slow": 20, "stop_loss": Decimal("0.05")}, START, END, seed=3)


def test_fast_not_below_slow_never_trades() -> None:
    stats = simulate({"fast": 30, "slow": 10}, START, END)
    assert stats["TotalNumberOfTrades"] == 0
    assert stats["TotalNetProfit"] == pytest.approx(0.0)


def test_simulator_plugs_into_statistics_fitness() -> None:
    fitness = StatisticsFitness(simulate, settings={"seed": 3})
    stats, score = fitness.evaluate({"fast": 5, "slow": 20, "stop_loss": 0}, EvaluationWindow(START, END))
    assert score == pytest.approx(stats["SharpeRatio"])
