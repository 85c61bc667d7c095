"""Tests for RunConfig validation and file/env/override resolution."""

import json
from pathlib import Path

import pytest

from reactree.config import ParallelFailurePolicy, RunConfig, load_run_config
from reactree.errors import ConfigError


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("REACTREE_CONFIG", str(tmp_path / "absent.json"))
    for name in ("MAX_ROUNDS_PER_PAIR", "MAX_FEEDBACK_DEPTH", "PARALLEL_FAILURE_POLICY", "STORAGE_PATH", "PERSIST"):
        monkeypatch.delenv(f"REACTREE_{name}", raising=False)


def test_defaults():
    config = load_run_config()
    assert config.max_rounds_per_pair == 2
    assert config.max_feedback_depth == 3
    assert config.default_max_iterations == 3
    assert config.parallel_failure_policy == ParallelFailurePolicy.LET_FINISH
    assert config.condition_cache_ttl_seconds == 300.0
    assert config.leaf_timeout_seconds is None
    assert config.storage_path == Path(".reactree")


def test_paths():
    config = RunConfig(storage_path=Path("/data/rt"))
    assert config.runs_dir == Path("/data/rt/runs")
    assert config.run_dir("abc") == Path("/data/rt/runs/abc")
    assert config.episodic_memory_path == Path("/data/rt/episodic_memory.jsonl")


@pytest.mark.parametrize(
    "field,value",
    [
        ("max_rounds_per_pair", 0),
        ("max_feedback_depth", 0),
        ("default_max_iterations", 0),
        ("parallel_max_concurrency", 0),
        ("leaf_timeout_seconds", 0),
        ("condition_cache_ttl_seconds", -1),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ConfigError, match=field):
        RunConfig(**{field: value})


def test_precedence_file_env_override(tmp_path, monkeypatch):
    config_file = tmp_path / "configuration.json"
    config_file.write_text(
        json.dumps({"engine": {"max_rounds_per_pair": 4, "max_feedback_depth": 5, "parallel_failure_policy": "cancel"}})
    )
    monkeypatch.setenv("REACTREE_MAX_FEEDBACK_DEPTH", "6")

    config = load_run_config(config_file, max_rounds_per_pair=7)

    assert config.max_rounds_per_pair == 7
    assert config.max_feedback_depth == 6
    assert config.parallel_failure_policy == ParallelFailurePolicy.CANCEL


def test_none_overrides_are_ignored(tmp_path):
    config_file = tmp_path / "configuration.json"
    config_file.write_text(json.dumps({"engine": {"storage_path": str(tmp_path / "store")}}))

    config = load_run_config(config_file, storage_path=None)

    assert config.storage_path == tmp_path / "store"


def test_env_bool_and_bad_values(monkeypatch):
    monkeypatch.setenv("REACTREE_PERSIST", "false")
    assert load_run_config().persist is False

    monkeypatch.setenv("REACTREE_MAX_ROUNDS_PER_PAIR", "many")
    with pytest.raises(ConfigError, match="max_rounds_per_pair"):
        load_run_config()


def test_unreadable_file_falls_back_to_defaults(tmp_path):
    config_file = tmp_path / "configuration.json"
    config_file.write_text("{not json")
    assert load_run_config(config_file).max_rounds_per_pair == 2


def test_with_overrides_coerces():
    config = RunConfig().with_overrides(parallel_failure_policy="run_all", leaf_timeout_seconds="2.5")
    assert config.parallel_failure_policy == ParallelFailurePolicy.RUN_ALL
    assert config.leaf_timeout_seconds == 2.5
