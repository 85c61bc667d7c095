"""Run configuration.

``RunConfig`` is built once per run and handed explicitly to every component
(scheduler, router, evaluator, stores). Nothing reads ambient settings after
that point.

Resolution order, later wins:
1. dataclass defaults
2. ``~/.reactree/configuration.json`` (or the file named by ``REACTREE_CONFIG``)
3. ``REACTREE_*`` environment variables
4. keyword overrides passed to ``load_run_config``
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
from pathlib import Path
from typing import Any

from reactree.errors import ConfigError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

REACTREE_CONFIG_FILE = Path.home() / ".reactree" / "configuration.json"
DEFAULT_STORAGE_PATH = Path(".reactree")


class ParallelFailurePolicy(StrEnum):
    """What a Parallel node does with its other children once one fails."""

    LET_FINISH = "let_finish"  # In-flight children finish, nothing new is dispatched
    RUN_ALL = "run_all"  # Every child runs regardless
    CANCEL = "cancel"  # In-flight children are cancelled


def get_config_file() -> Path:
    override = os.environ.get("REACTREE_CONFIG")
    return Path(override) if override else REACTREE_CONFIG_FILE


def get_reactree_config(path: Path | None = None) -> dict[str, Any]:
    """Load the ``engine`` section of the configuration file (empty if absent)."""
    config_file = path or get_config_file()
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    engine = data.get("engine", data)
    return engine if isinstance(engine, dict) else {}


# ---------------------------------------------------------------------------
# RunConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one run of the engine."""

    storage_path: Path = DEFAULT_STORAGE_PATH
    workspace_root: Path = field(default_factory=Path.cwd)

    # Feedback Router bounds
    max_rounds_per_pair: int = 2
    max_feedback_depth: int = 3

    # Node defaults
    default_max_iterations: int = 3
    parallel_max_concurrency: int = 4
    parallel_failure_policy: ParallelFailurePolicy = ParallelFailurePolicy.LET_FINISH
    leaf_timeout_seconds: float | None = None

    # Condition Evaluator
    condition_cache_ttl_seconds: float = 300.0

    # Write JSONL logs / snapshots; tests can run fully in memory
    persist: bool = True

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ConfigError("; ".join(errors))

    def validate(self) -> list[str]:
        errors = []
        if self.max_rounds_per_pair < 1:
            errors.append("max_rounds_per_pair must be >= 1")
        if self.max_feedback_depth < 1:
            errors.append("max_feedback_depth must be >= 1")
        if self.default_max_iterations < 1:
            errors.append("default_max_iterations must be >= 1")
        if self.parallel_max_concurrency < 1:
            errors.append("parallel_max_concurrency must be >= 1")
        if self.leaf_timeout_seconds is not None and self.leaf_timeout_seconds <= 0:
            errors.append("leaf_timeout_seconds must be positive")
        if self.condition_cache_ttl_seconds < 0:
            errors.append("condition_cache_ttl_seconds must be >= 0")
        return errors

    @property
    def runs_dir(self) -> Path:
        return self.storage_path / "runs"

    @property
    def episodic_memory_path(self) -> Path:
        return self.storage_path / "episodic_memory.jsonl"

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        return replace(self, **_coerce(overrides))


def _coerce(values: dict[str, Any]) -> dict[str, Any]:
    """Convert raw JSON/env values into the types RunConfig expects."""
    known = {f.name: f for f in fields(RunConfig)}
    out: dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        if value is None:
            out[key] = None
            continue
        try:
            if key in ("storage_path", "workspace_root"):
                out[key] = Path(value).expanduser()
            elif key == "parallel_failure_policy":
                out[key] = ParallelFailurePolicy(value)
            elif key in ("max_rounds_per_pair", "max_feedback_depth", "default_max_iterations", "parallel_max_concurrency"):
                out[key] = int(value)
            elif key in ("leaf_timeout_seconds", "condition_cache_ttl_seconds"):
                out[key] = float(value)
            elif key == "persist":
                out[key] = value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
            else:
                out[key] = value
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {value!r} ({e})") from e
    return out


def _env_overrides() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields(RunConfig):
        env_value = os.environ.get(f"REACTREE_{f.name.upper()}")
        if env_value is not None:
            values[f.name] = env_value
    return values


def load_run_config(config_file: Path | None = None, **overrides: Any) -> RunConfig:
    """Build the RunConfig for a run from file, environment and overrides."""
    values: dict[str, Any] = {}
    values.update(_coerce(get_reactree_config(config_file)))
    values.update(_coerce(_env_overrides()))
    values.update(_coerce({k: v for k, v in overrides.items() if v is not None}))
    return RunConfig(**values)
