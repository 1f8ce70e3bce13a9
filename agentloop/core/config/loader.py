"""YAML settings file discovery for ``Config``."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from agentloop.core.config.schema import Config

CONFIG_ENV = "AGENTLOOP_CONFIG"
DEFAULT_CONFIG_FILE = "config.yaml"


def load_config(config_path: str | Path | None = None) -> Config:
    """Build ``Config`` from the first settings file that applies.

    ``config_path`` wins over ``$AGENTLOOP_CONFIG``, which wins over
    ``./config.yaml``. A named file that does not exist yields the defaults
    rather than falling through to the next candidate. File values are
    passed as init kwargs, so ``AGENTLOOP_*`` env vars still override them.
    """
    path = find_config_file(config_path)
    data = read_yaml(path) if path else {}
    logger.debug(f"Config loaded from {path or 'defaults'}")
    return Config(**data)


def find_config_file(config_path: str | Path | None = None) -> Path | None:
    named = config_path or os.environ.get(CONFIG_ENV)
    if named:
        path = Path(named)
        return path if path.is_file() else None
    default = Path(DEFAULT_CONFIG_FILE)
    return default if default.is_file() else None


def read_yaml(path: Path) -> dict[str, Any]:
    """Parse a settings file; an empty file is an empty mapping."""
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data
