# config.py
"""
Engine settings.

Resolution order (later wins):
  1. built-in defaults
  2. optional YAML file (relayci.yml `engine:` section, or a dedicated file)
  3. RELAYCI_* environment variables
  4. explicit overrides (CLI flags)
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ValidationError

from .errors import ConfigError

DEFAULT_CONFIG_FILE = ".relayci/config.yml"

ENV_PREFIX = "RELAYCI_"
ENV_KEYS = {
    "WORKSPACE": "workspace",
    "ARTIFACT_DIR": "artifact_dir",
    "RUNS_DIR": "runs_dir",
    "CONNECTIONS": "connections_file",
    "MAX_WORKERS": "max_workers",
    "KEEP_RUNS": "keep_runs",
    "DEFAULT_TIMEOUT_MINUTES": "default_timeout_minutes",
}


class Settings(BaseModel):
    workspace: str = "."
    artifact_dir: str = ".relayci/artifacts"
    runs_dir: str = ".relayci/runs"
    connections_file: Optional[str] = None
    max_workers: int = 1
    keep_runs: int = 10
    default_timeout_minutes: Optional[float] = 60.0


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge `override` into a copy of `base`. Nested dicts merge, everything else replaces."""
    out: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(out.get(key), dict) and isinstance(value, dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(data).__name__}: {path}")
    # accept either a bare settings mapping or one nested under `engine:`
    engine = data.get("engine", data)
    if not isinstance(engine, dict):
        raise ConfigError(f"'engine' must be a mapping: {path}")
    return engine


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for suffix, key in ENV_KEYS.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value not in (None, ""):
            out[key] = value
    return out


def load_config(
    path: str | Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Resolve effective engine settings.

    Args:
        path: YAML settings file. When None, DEFAULT_CONFIG_FILE is used if it exists.
        overrides: Explicit values (None values are ignored).
        environ: Environment mapping (defaults to os.environ).

    Raises:
        ConfigError: missing explicit file, malformed YAML or invalid values.
    """
    effective: Dict[str, Any] = {}

    if path is not None:
        p = Path(path).expanduser()
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}")
        effective = deep_merge(effective, _load_file(p))
    elif Path(DEFAULT_CONFIG_FILE).exists():
        effective = deep_merge(effective, _load_file(Path(DEFAULT_CONFIG_FILE)))

    effective = deep_merge(effective, _from_env(os.environ if environ is None else environ))
    effective = deep_merge(effective, {k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        return Settings.model_validate(effective)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine settings: {e}") from e
