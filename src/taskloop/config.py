"""Project configuration: ``.rulebook/ralph/config.yaml`` plus ``TASKLOOP_*`` overrides."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from taskloop.schemas import CheckpointPolicy

logger = logging.getLogger(__name__)

DATA_DIR = Path(".rulebook") / "ralph"
CONFIG_FILE = "config.yaml"
ENV_PREFIX = "TASKLOOP_"

_ENV_KEYS = {
    "MAX_ITERATIONS": "max_iterations",
    "TOOL": "tool",
    "MAX_WORKERS": "max_workers",
    "COMMAND": "command",
    "COMMAND_TIMEOUT": "command_timeout_seconds",
    "NON_INTERACTIVE": "non_interactive",
}


class LoopConfig(BaseModel):
    """Settings for one project's autonomous loop."""

    max_iterations: int = Field(default=10, ge=1)
    tool: str = "claude"
    max_workers: int = Field(default=1, ge=1)
    command: str = ""
    command_timeout_seconds: float = Field(default=1800.0, gt=0)
    quality_gates: dict[str, str] = Field(default_factory=dict)
    checkpoint: CheckpointPolicy = Field(default_factory=CheckpointPolicy)
    non_interactive: bool = False


def data_dir_for(project_root: str | Path) -> Path:
    """Directory holding all persisted loop state for *project_root*."""
    return Path(project_root).resolve() / DATA_DIR


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read %s (%s); using defaults", path, exc)
        return {}
    if not isinstance(loaded, dict):
        logger.warning("Ignoring %s: expected a mapping at the top level", path)
        return {}
    return loaded


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for suffix, key in _ENV_KEYS.items():
        value = environ.get(ENV_PREFIX + suffix, "").strip()
        if value:
            overrides[key] = value
    return overrides


def load_config(project_root: str | Path, environ: Mapping[str, str] | None = None) -> LoopConfig:
    """Load the project config; anything invalid falls back to defaults with a warning."""
    path = data_dir_for(project_root) / CONFIG_FILE
    raw = _read_yaml(path)
    raw.update(_env_overrides(os.environ if environ is None else environ))
    try:
        return LoopConfig.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Invalid loop configuration in %s; using defaults: %s", path, exc)
        return LoopConfig()


def write_default_config(project_root: str | Path) -> Path | None:
    """Write a commented starter ``config.yaml`` unless one already exists."""
    path = data_dir_for(project_root) / CONFIG_FILE
    if path.exists():
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    defaults = LoopConfig().model_dump(mode="json")
    text = "# taskloop configuration (TASKLOOP_* environment variables override these)\n"
    text += yaml.safe_dump(defaults, sort_keys=False)
    path.write_text(text, encoding="utf-8")
    return path
