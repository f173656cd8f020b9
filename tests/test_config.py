"""Tests for run configuration loading, aliases and environment overrides."""
from __future__ import annotations

import json
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from evo_optimizer.config import apply_env_overrides, config_from_dict, load_config
from evo_optimizer.optimization.backends import ParallelBackend, SequentialBackend
from evo_optimizer.optimization.errors import InvalidSpec

EXAMPLE = Path(__file__).resolve().parents[1] / "storage" / "config" / "example_run.json"


def test_example_config_loads_camel_case_sections() -> None:
    cfg = load_config(EXAMPLE, use_env=False).validate()

    assert cfg.start_date == date(2021, 1, 1) and cfg.end_date == date(2021, 12, 31)
    assert [g.key for g in cfg.genes] == ["fast", "slow", "stop_loss"]
    assert cfg.genes[0].is_int and cfg.genes[2].is_decimal
    assert cfg.genes[2].max_decimal == Decimal("0.1")
    assert cfg.evolution.population_size == 12
    assert cfg.evolution.stagnation_generations == 5
    assert cfg.execution_mode == "parallel"
    assert cfg.max_workers == 4
    assert cfg.fitness_filter.filter_enabled is True
    assert cfg.fitness_filter.min_trades == 3
    assert cfg.fitness_filter.include_negative_return is False
    assert cfg.walk_forward_enabled is False
    assert (cfg.walk_forward.in_sample_days, cfg.walk_forward.step_days, cfg.walk_forward.top_n) == (90, 30, 5)
    assert cfg.simulator_settings["seed"] == 7


def test_nested_sections_and_aliases() -> None:
    cfg = config_from_dict({
        "genes": [{"key": "x", "min": 1, "max": 9, "step": 2}],
        "start-date": "2022-02-01",
        "end_date": "2022-06-30",
        "evolution": {"mode": "BruteForce", "maxRetainedGenerations": 4},
        "walk_forward": True,
        "inSamplePeriod": 20,
        "step": 5,
        "minimumTrades": 7,
        "enableFitnessFilter": "false",
        "maxThreads": 6,
        "fitness": {"scoreKey": "TotalNetProfit"},
        "remote": {"url": "https://batch.test", "jobId": "nightly", "pollInterval": 0.5},
    })
    assert cfg.evolution.mode == "brute_force"
    assert cfg.evolution.max_retained_generations == 4
    assert cfg.walk_forward_enabled is True
    assert (cfg.walk_forward.in_sample_days, cfg.walk_forward.step_days) == (20, 5)
    assert cfg.fitness_filter.min_trades == 7
    assert cfg.fitness_filter.filter_enabled is False
    assert cfg.max_workers == 6
    assert cfg.fitness_score == "TotalNetProfit"
    assert cfg.remote.job_id == "nightly" and cfg.remote.poll_interval == 0.5
    cfg.validate()


def test_validate_rejects_incomplete_configs() -> None:
    with pytest.raises(InvalidSpec):
        config_from_dict({"start_date": "2021-01-01", "end_date": "2021-02-01"}).validate()
    with pytest.raises(ValueError):
        config_from_dict({"genes": [{"key": "x", "min": 1, "max": 2}]}).validate()
    with pytest.raises(ValueError):
        config_from_dict({
            "genes": [{"key": "x", "min": 1, "max": 2}],
            "start_date": "2021-03-01",
            "end_date": "2021-02-01",
        }).validate()
    with pytest.raises(InvalidSpec):
        config_from_dict({
            "mode": "brute_force",
            "genes": [{"key": "x", "min": 1, "max": 2}],
            "start_date": "2021-01-01",
            "end_date": "2021-02-01",
        }).validate()


def test_env_overrides_remote_and_logging(monkeypatch) -> None:
    monkeypatch.setenv("EVO_REMOTE_URL", "https://env.batch")
    monkeypatch.setenv("EVO_REMOTE_TOKEN", "tok")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("EVO_REMOTE_JOB", raising=False)
    cfg = apply_env_overrides(config_from_dict({"remote": {"url": "https://file.batch", "jobId": "a"}}))

    assert cfg.remote.url == "https://env.batch"
    assert cfg.remote.token == "tok"
    assert cfg.remote.job_id == "a"
    assert cfg.log_level == "DEBUG"
    assert cfg.remote.to_log_payload()["token"] == "***"


def test_dotenv_file_is_read(tmp_path, monkeypatch) -> None:
    # registered with monkeypatch so the value load_dotenv sets is undone afterwards
    monkeypatch.setenv("EVO_REMOTE_JOB", "placeholder")
    monkeypatch.delenv("EVO_REMOTE_JOB")
    env_file = tmp_path / ".env"
    env_file.write_text("EVO_REMOTE_JOB=from-dotenv\n", encoding="utf-8")
    cfg_file = tmp_path / "run.json"
    cfg_file.write_text(json.dumps({"genes": []}), encoding="utf-8")

    cfg = load_config(cfg_file, dotenv_path=str(env_file))
    assert cfg.remote.job_id == "from-dotenv"


def test_load_config_errors(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(bad, use_env=False)


def test_builders_follow_execution_mode() -> None:
    base = {"genes": [{"key": "fast", "min": 2, "max": 10}], "start_date": "2021-01-01", "end_date": "2021-03-01"}
    assert isinstance(config_from_dict(base).build_backend(), SequentialBackend)
    parallel = config_from_dict({**base, "executionMode": "parallel", "workers": 3})
    backend = parallel.build_backend()
    assert isinstance(backend, ParallelBackend) and backend.resolved_workers() == 3

    remote = config_from_dict({**base, "executionMode": "remote"})
    with pytest.raises(ValueError):
        remote.build_backend()

    evaluator = config_from_dict(base).build_evaluator()
    assert evaluator.score_key == "SharpeRatio"
    assert evaluator.filter_enabled is True
