"""YAML configuration for plan-mode sessions."""

from __future__ import annotations

import copy
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .mode import DEFAULT_TOGGLE_KEY, Mode
from .questions import MAX_ROUNDS

DEFAULT_CONFIG_NAME = "planmode.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "session": {
        "default_mode": "normal",
        "auto_mode": True,
        "toggle_key": DEFAULT_TOGGLE_KEY,
    },
    "rounds": {
        "max_rounds": MAX_ROUNDS,
        "on_limit": "ask",
    },
    "execution": {
        "max_workers": 1,
    },
    "checkpoints": {
        "test": ["pytest", "-q"],
        "build": ["python", "-m", "build"],
        "lint": ["ruff", "check", "."],
        "timeout": 600,
    },
    "models": {
        "planner": "offline",
        "timeout": 120,
    },
    "paths": {
        "logs": ".planmode/logs",
    },
}


class RoundLimitPolicy(str, Enum):
    """What happens when a run needs a sixth round.

    ``ask`` pauses the run until the user continues best-effort or aborts.
    ``best_effort`` leaves the step failed and keeps executing independent work.
    ``abort`` ends the run.
    """

    ASK = "ask"
    BEST_EFFORT = "best_effort"
    ABORT = "abort"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SessionSettings(_Section):
    default_mode: Mode = Mode.NORMAL
    auto_mode: bool = True
    toggle_key: str = DEFAULT_TOGGLE_KEY


class RoundSettings(_Section):
    max_rounds: int = Field(default=MAX_ROUNDS, ge=1, le=MAX_ROUNDS)
    on_limit: RoundLimitPolicy = RoundLimitPolicy.ASK


class ExecutionSettings(_Section):
    max_workers: int = Field(default=1, ge=1)


class CheckpointSettings(_Section):
    test: List[str] = Field(default_factory=lambda: ["pytest", "-q"])
    build: List[str] = Field(default_factory=lambda: ["python", "-m", "build"])
    lint: List[str] = Field(default_factory=lambda: ["ruff", "check", "."])
    timeout: float = Field(default=600, gt=0)

    @field_validator("test", "build", "lint", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.split()
        return value


class ModelSettings(_Section):
    planner: str = "offline"
    timeout: float = Field(default=120, gt=0)
    api_key: str | None = None
    base_url: str | None = None


class PathSettings(_Section):
    logs: str = ".planmode/logs"


class PlanModeConfig(_Section):
    """Validated configuration tree."""

    session: SessionSettings = Field(default_factory=SessionSettings)
    rounds: RoundSettings = Field(default_factory=RoundSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    checkpoints: CheckpointSettings = Field(default_factory=CheckpointSettings)
    models: ModelSettings = Field(default_factory=ModelSettings)
    paths: PathSettings = Field(default_factory=PathSettings)

    def logs_root(self, repo_root: Path) -> Path:
        candidate = Path(self.paths.logs)
        if not candidate.is_absolute():
            candidate = (repo_root / candidate).resolve()
        return candidate


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def parse_config(data: Mapping[str, Any] | None) -> PlanModeConfig:
    """Validate a raw mapping into :class:`PlanModeConfig`."""
    try:
        return PlanModeConfig.model_validate(dict(data or {}))
    except ValidationError as error:
        raise ConfigError(f"Invalid plan-mode configuration: {error}") from error


def load_config(config_path: Path) -> PlanModeConfig:
    """Load YAML configuration from disk; a missing file yields the defaults."""
    if not config_path.exists():
        return PlanModeConfig()

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return parse_config(data)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "PlanModeConfig",
    "RoundLimitPolicy",
    "copy_config_template",
    "load_config",
    "parse_config",
    "write_config",
]
