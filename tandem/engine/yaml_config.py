"""YAML configuration loader.

Loads the ``engine:`` section of a YAML file on top of the environment
configuration. Keys mirror EngineConfig field names.

Example YAML:
    engine:
      data_dir: ~/.tandem
      default_model: sonnet
      checkpoint_on_send: true
      auto_init_git: false
      auto_approve_tools: [TodoWrite, Glob]
      quiet_tools: [Read, Edit]
      log_level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

_LIST_FIELDS = {"auto_approve_tools", "quiet_tools"}


def load_yaml_config(path: str | Path, base: EngineConfig | None = None) -> EngineConfig:
    """Load a YAML config file and merge it over *base* (or env defaults).

    Unknown keys are ignored with a warning. Raises FileNotFoundError or
    yaml.YAMLError when the file is missing or malformed.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    base = base or EngineConfig.from_env()
    section = raw.get("engine") or {}
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'engine' section must be a mapping")

    known = {f.name for f in dataclasses.fields(EngineConfig)}
    overrides: dict = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown engine key %r in %s", key, path)
            continue
        if key in _LIST_FIELDS:
            if isinstance(value, str):
                value = [v.strip() for v in value.split(",") if v.strip()]
            else:
                value = [str(v) for v in (value or [])]
        elif key == "data_dir":
            value = Path(str(value))
        overrides[key] = value

    config = dataclasses.replace(base, **overrides)
    logger.info(
        "Parsed YAML config %s, overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return config
