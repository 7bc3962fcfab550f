"""YAML configuration loader.

Loads a single YAML file layered over the env-derived RuntimeConfig.
When no YAML is provided, env vars work exactly as before.

Example YAML:
    runtime:
      install_attempt_cap: 2
      install_cooldown_seconds: 5
      artifact_settle_seconds: 2
      log_level: DEBUG

    paths:
      project_root: /home/project
      alternate_roots: [WORK_DIR, "~/project"]

    commands:
      install: pnpm install
      start: pnpm run dev
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import RuntimeConfig

logger = logging.getLogger(__name__)

_TUPLE_FIELDS = {"alternate_roots", "manifest_names", "lockfile_names"}
_SKIP_FIELDS = {"event_callback"}


def _coerce(name: str, value: Any, current: Any) -> Any:
    """Coerce a raw YAML scalar/list to the type of the existing field."""
    if name in _TUPLE_FIELDS:
        if isinstance(value, str):
            return tuple(p.strip() for p in value.split(",") if p.strip())
        return tuple(str(v) for v in (value or ()))
    if value is None:
        return None
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value)


def apply_overrides(config: RuntimeConfig, raw: dict[str, Any]) -> RuntimeConfig:
    """Return a copy of *config* with known keys from *raw* applied."""
    known = {f.name for f in dataclasses.fields(RuntimeConfig)} - _SKIP_FIELDS
    updates: dict[str, Any] = {}
    for key, value in (raw or {}).items():
        if key not in known:
            logger.warning("apply_overrides: ignoring unknown runtime key %r", key)
            continue
        updates[key] = _coerce(key, value, getattr(config, key))
    return dataclasses.replace(config, **updates)


def load_yaml_config(
    path: str | Path,
    base: RuntimeConfig | None = None,
) -> RuntimeConfig:
    """Load and parse a YAML config file into a RuntimeConfig.

    Precedence (highest wins): ``commands``/``paths`` sections, then the
    ``runtime`` section, then *base* (defaults to ``RuntimeConfig.from_env()``).
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base if base is not None else RuntimeConfig.from_env()
    config = apply_overrides(config, raw.get("runtime") or {})

    paths_raw = raw.get("paths") or {}
    path_overrides = {
        k: v for k, v in paths_raw.items()
        if k in {"project_root", "alternate_roots"}
    }
    if path_overrides:
        config = apply_overrides(config, path_overrides)

    commands_raw = raw.get("commands") or {}
    command_overrides: dict[str, Any] = {}
    if "install" in commands_raw:
        command_overrides["install_command"] = commands_raw["install"]
    if "start" in commands_raw:
        command_overrides["start_command"] = commands_raw["start"]
    if command_overrides:
        config = apply_overrides(config, command_overrides)

    logger.info(
        "load_yaml_config: root=%s install=%s start=%s",
        config.project_root,
        config.install_command or "<auto>",
        config.start_command or "<auto>",
    )
    return config
