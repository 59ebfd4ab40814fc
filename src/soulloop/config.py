"""YAML configuration for the soul loop."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

DEFAULT_CONFIG_NAME = "soulloop.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "paths": {
        "data": "~/.soulloop",
        "db_path": "~/.soulloop/souls.db",
        "pause_file": "~/.soulloop/souls_pause_state",
    },
    "agent": {
        "command": ["claude", "--print", "--dangerously-skip-permissions", "{prompt}"],
        "timeout": 3600,
    },
    "loop": {
        "settle_seconds": 2.0,
    },
    "publish": {
        "enabled": True,
        "remote": "ai",
        "timeout": 30,
    },
    "logging": {
        "level": "INFO",
    },
}

_PATH_KEYS = ("data", "db_path", "pause_file")


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be parsed."""


def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            base[key] = value
    return base


def _resolve_paths(config: Dict[str, Any], base_dir: Path) -> None:
    paths_cfg = config.get("paths") or {}
    for key in _PATH_KEYS:
        value = paths_cfg.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        candidate = Path(value.strip()).expanduser()
        if not candidate.is_absolute():
            candidate = (base_dir / candidate).resolve()
        paths_cfg[key] = str(candidate)
    config["paths"] = paths_cfg


def load_config(config_path: Path | str) -> Dict[str, Any]:
    """Load YAML configuration merged over the defaults.

    A missing file yields the defaults. Relative paths in the ``paths``
    section resolve against the directory holding the file.
    """
    path = Path(config_path).expanduser()
    config = _copy_config_template()
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise ConfigError(f"Failed to parse config {path}: {error}") from error
        except OSError as error:
            raise ConfigError(f"Failed to read config {path}: {error}") from error
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping at the top level.")
        _merge(config, data)
    _resolve_paths(config, path.resolve().parent)
    return config


def write_default_config(config_path: Path | str) -> Path:
    """Persist the default configuration with stable formatting."""
    path = Path(config_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(_copy_config_template(), handle, sort_keys=False)
    return path


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "load_config",
    "write_default_config",
]
