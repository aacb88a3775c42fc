"""YAML configuration loader.

Layers a single YAML file over the DEVSERVE_* environment config.
When no YAML is provided, env vars work exactly as before.

Example YAML:
    ports:
      base: 3001
      max: 3099
      auxiliary: [35729, 35730, 35731]
      reclaim_delay_ms: 100
      force_reclaim: true

    output:
      scrollback_chars: 50000
      batch_chars: 4096
      throttle_ms: 4

    process:
      grace_period_ms: 500
      kill_timeout_seconds: 5
      hostname: localhost
      dev_script: dev
      env:
        BROWSER: none

    logging:
      level: INFO
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import DevServerConfig

logger = logging.getLogger(__name__)

# section -> yaml key -> (config field, converter)
_FIELD_MAP: dict[str, dict[str, tuple[str, Any]]] = {
    "ports": {
        "base": ("base_port", int),
        "max": ("max_port", int),
        "auxiliary": ("auxiliary_ports", lambda v: tuple(int(p) for p in v or ())),
        "reclaim_delay_ms": ("reclaim_delay_seconds", lambda v: float(v) / 1000),
        "force_reclaim": ("force_reclaim", bool),
    },
    "output": {
        "scrollback_chars": ("scrollback_limit", int),
        "batch_chars": ("output_batch_size", int),
        "throttle_ms": ("output_throttle_seconds", lambda v: float(v) / 1000),
    },
    "process": {
        "grace_period_ms": ("startup_grace_seconds", lambda v: float(v) / 1000),
        "kill_timeout_seconds": ("kill_timeout_seconds", float),
        "hostname": ("hostname", str),
        "dev_script": ("dev_script", str),
        "env": ("extra_env", lambda v: {str(k): str(val) for k, val in (v or {}).items()}),
    },
    "logging": {
        "level": ("log_level", lambda v: str(v).upper()),
    },
}


def _collect_overrides(raw: dict[str, Any], path: Path) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for section, values in raw.items():
        fields = _FIELD_MAP.get(section)
        if fields is None:
            logger.warning("Ignoring unknown section '%s' in %s", section, path)
            continue
        if not isinstance(values, dict):
            logger.warning("Section '%s' in %s is not a mapping", section, path)
            continue
        for key, value in values.items():
            target = fields.get(key)
            if target is None:
                logger.warning(
                    "Ignoring unknown key '%s.%s' in %s", section, key, path,
                )
                continue
            field_name, convert = target
            overrides[field_name] = convert(value)
    return overrides


def load_yaml_config(
    path: str | Path,
    base: DevServerConfig | None = None,
) -> DevServerConfig:
    """Load a YAML file on top of *base* (defaults to env config).

    Raises:
        FileNotFoundError: *path* does not exist.
        ValueError: the file is not a mapping or yields an invalid config.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    base_config = base if base is not None else DevServerConfig.from_env()
    overrides = _collect_overrides(raw, path)
    # replace() re-runs __post_init__ validation.
    config = replace(base_config, **overrides)
    logger.info(
        "Loaded YAML config from %s (%d override(s))", path, len(overrides),
    )
    return config
