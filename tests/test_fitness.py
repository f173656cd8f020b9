"""Tests for simulator statistics scoring and the false-positive filter."""
from __future__ import annotations

import pytest

from evo_optimizer.optimization.fitness import (
    FILTERED_SCORE,
    FitnessFilter,
    StatisticsFitness,
    import_callable,
    normalize_statistics,
)
from tests._optimizer_test_utils import WINDOW


def fake_simulator(sharpe=1.2, trades=25, drawdown="12.5%", loss_rate="40%"):
    def simulate(params, start, end, **settings):
        simulate.calls.append((dict(params), start, end, dict(settings)))
        return {
            "Sharpe Ratio": sharpe,
            "Total Trades": trades,
            "Drawdown": drawdown,
            "Loss Rate": loss_rate,
            "Net Profit": "$1,250.50",
            "Notes": "n/a",
        }

    simulate.calls = []
    return simulate


def test_normalize_statistics_binds_names_and_strips_units() -> None:
    stats = normalize_statistics(fake_simulator()({}, None, None))
    assert stats["SharpeRatio"] == pytest.approx(1.2)
    assert stats["TotalNumberOfTrades"] == 25
    assert stats["Drawdown"] == pytest.approx(12.5)
    assert stats["TotalNetProfit"] == pytest.approx(1250.5)
    assert "Notes" not in stats


def test_evaluate_passes_window_and_settings() -> None:
    sim = fake_simulator()
    fitness = StatisticsFitness(sim, settings={"seed": 3})
    stats, score = fitness.evaluate({"fast": 5}, WINDOW)
    assert score == pytest.approx(1.2)
    assert sim.calls == [({"fast": 5}, WINDOW.start, WINDOW.end, {"seed": 3})]
    assert stats["SharpeRatio"] == pytest.approx(1.2)


@pytest.mark.parametrize(
    "filt, stats_kwargs, expected",
    [
        (FitnessFilter(min_trades=30), {}, ["min_trades"]),
        (FitnessFilter(), {"trades": 0}, ["no_trades"]),
        (FitnessFilter(max_drawdown=10.0), {}, ["max_drawdown"]),
        (FitnessFilter(min_sharpe_ratio=2.0), {}, ["min_sharpe_ratio"]),
        (FitnessFilter(), {}, []),
    ],
)
def test_filter_rejections(filt, stats_kwargs, expected) -> None:
    stats = normalize_statistics(fake_simulator(**stats_kwargs)({}, None, None))
    assert filt.rejections(stats) == expected


def test_filter_ignores_statistics_the_simulator_does_not_report() -> None:
    def sharpe_only(params, start, end, **settings):
        return {"SharpeRatio": 1.5}

    filt = FitnessFilter(min_trades=5, max_drawdown=10.0, include_negative_return=False)
    assert filt.rejections({"SharpeRatio": 1.5}) == []

    stats, score = StatisticsFitness(sharpe_only, fitness_filter=FitnessFilter()).evaluate({}, WINDOW)
    assert stats == {"SharpeRatio": 1.5}
    assert score == pytest.approx(1.5)

    strict = StatisticsFitness(sharpe_only, fitness_filter=FitnessFilter(min_sharpe_ratio=2.0))
    assert strict.evaluate({}, WINDOW)[1] == FILTERED_SCORE


def test_filter_flags_all_losing_trades() -> None:
    assert FitnessFilter().rejections({"TotalNumberOfTrades": 5, "LossRate": 1.0}) == ["loss_rate"]


def test_negative_return_rejected_when_excluded() -> None:
    filt = FitnessFilter(include_negative_return=False)
    stats = {"TotalNumberOfTrades": 5, "CompoundingAnnualReturn": -0.1}
    assert filt.rejections(stats) == ["negative_return"]


def test_filter_runs_only_on_positive_scores() -> None:
    strict = FitnessFilter(min_trades=100)
    fitness = StatisticsFitness(fake_simulator(sharpe=1.5), fitness_filter=strict)
    assert fitness.evaluate({}, WINDOW)[1] == FILTERED_SCORE

    losing = StatisticsFitness(fake_simulator(sharpe=-0.4), fitness_filter=strict)
    assert losing.evaluate({}, WINDOW)[1] == pytest.approx(-0.4)


def test_unfiltered_copy_scores_raw_statistic() -> None:
    fitness = StatisticsFitness(fake_simulator(sharpe=1.5), fitness_filter=FitnessFilter(min_trades=100))
    raw = fitness.unfiltered()
    assert raw.evaluate({}, WINDOW)[1] == pytest.approx(1.5)
    assert fitness.filter_enabled is True


def test_alternative_score_key_and_missing_statistic() -> None:
    profit = StatisticsFitness(fake_simulator(), score_key="Net Profit")
    assert profit.evaluate({}, WINDOW)[1] == pytest.approx(1250.5)

    missing = StatisticsFitness(fake_simulator(), score_key="Alpha")
    with pytest.raises(KeyError):
        missing.evaluate({}, WINDOW)


def test_import_callable_resolves_dotted_paths() -> None:
    fn = import_callable("evo_optimizer.simulators.sma_crossover.simulate")
    assert callable(fn)
    with pytest.raises(ValueError):
        import_callable("simulate")
    with pytest.raises(AttributeError):
        import_callable("evo_optimizer.simulators.sma_crossover.nope")
