"""Project configuration loaded from ``whetstone.yaml``."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

DEFAULT_CONFIG_NAME = "whetstone.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "session": {
        "max_iterations": 5,
        "merge_threshold": None,
        "attempts": 1,
        "base_branch": None,
        "max_solutions": 5,
        "improving_order": True,
        "selection_probability": 1.0,
        "shuffle_examples": False,
        "seed": None,
    },
    "lock": {
        "stale_after": 60.0,
        "timeout": 10.0,
        "backoff": 0.1,
    },
    "scoring": {
        "test_pass_weight": 1.0,
        "complexity_weight": 0.1,
    },
    "tests": {
        "timeout": 300.0,
        "args": ["-q"],
        "command": ["pytest"],
    },
    "workspace": {
        "branch_prefix": "whetstone",
    },
    "paths": {
        "state_dir": ".whetstone",
        "worktrees_dir": ".whetstone/worktrees",
        "directive": ".whetstone/directive.md",
    },
}


class ConfigError(ValueError):
    """Raised when the configuration file cannot be used."""


def default_config() -> Dict[str, Any]:
    """Return a deep copy of the default configuration."""
    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overrides`` into a copy of ``base``."""

    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Path | str | None) -> Dict[str, Any]:
    """Load YAML configuration and merge it over the defaults.

    A missing file is not an error; the defaults are returned unchanged.
    """

    if config_path is None:
        return default_config()
    path = Path(config_path)
    if not path.exists():
        return default_config()

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return merge_config(DEFAULT_CONFIG, data)


def resolve_path(config: Mapping[str, Any], key: str, repo_root: Path) -> Path:
    """Resolve ``paths.<key>`` against ``repo_root``."""

    paths_cfg = config.get("paths") or {}
    value = paths_cfg.get(key) or DEFAULT_CONFIG["paths"][key]
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = repo_root / candidate
    return candidate


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_NAME",
    "default_config",
    "load_config",
    "merge_config",
    "resolve_path",
]
