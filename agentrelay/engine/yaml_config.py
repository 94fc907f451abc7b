"""YAML configuration loader.

Loads a single YAML file on top of the environment configuration.
When no YAML is provided, env vars work exactly as before.

Example YAML:
    relay:
      host: 0.0.0.0
      port: 8787
      cwd: /home/me/projects/app
      claude_command: [nix, develop, --command, claude]
      permission_mode: bypassPermissions
      append_system_prompt: "Be concise."
      exit_grace_seconds: 3
"""
from __future__ import annotations

import dataclasses
import logging
import shlex
from pathlib import Path
from typing import Any

import yaml

from .config import RelayConfig

logger = logging.getLogger(__name__)

_INT_FIELDS = {"port", "read_chunk_size", "stderr_limit", "title_limit"}
_FLOAT_FIELDS = {"exit_grace_seconds"}
_BOOL_FIELDS = {"include_partial_messages"}


def _coerce(name: str, value: Any) -> Any:
    if name == "claude_command":
        if isinstance(value, str):
            return shlex.split(value)
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
        raise ValueError("relay.claude_command must be a string or a list of strings")
    if name in _INT_FIELDS:
        return int(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _BOOL_FIELDS:
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if value is None:
        return None
    return str(value)


def apply_overrides(config: RelayConfig, overrides: dict[str, Any]) -> RelayConfig:
    """Return a copy of *config* with known keys from *overrides* applied."""
    known = {f.name for f in dataclasses.fields(RelayConfig)}
    changes: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            logger.warning("Ignoring unknown relay config key: %s", key)
            continue
        changes[key] = _coerce(key, value)
    return dataclasses.replace(config, **changes)


def load_yaml_config(path: str | Path, base: RelayConfig | None = None) -> RelayConfig:
    """Load *path* and merge its ``relay:`` section over *base*.

    *base* defaults to ``RelayConfig.from_env()``.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    section = raw.get("relay") or {}
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'relay' must be a mapping")

    config = apply_overrides(base if base is not None else RelayConfig.from_env(), section)
    logger.info(
        "Parsed YAML config %s; relay keys: %s",
        path.name, ", ".join(sorted(section)) if section else "(none)",
    )
    return config
