# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Filesystem layout and configuration for WatchPost.

Handles:
- Data root resolution (WATCHPOST_DATA_HOME, ~/.local/share)
- Investigation DB and log path helpers
- Packaged YAML defaults loading (watchpost.defaults/*.yaml)
"""

from __future__ import annotations

import os
import re
from importlib import resources as importlib_resources
from pathlib import Path
from typing import Any

import yaml


INVESTIGATION_SUFFIX = ".wpdb"


# -----------------------
# Config model wrapper
# -----------------------


class YAMLConfig:
    """Simple config wrapper over a loaded YAML mapping."""

    def __init__(self, config_dict: dict[str, Any]):
        self._config = config_dict

    @property
    def executor(self) -> dict[str, Any]:
        return self._config.get("executor", {})

    @property
    def persistence(self) -> dict[str, Any]:
        return self._config.get("persistence", {})

    @property
    def remote(self) -> dict[str, Any]:
        return self._config.get("remote", {})

    @property
    def widgets(self) -> dict[str, dict[str, Any]]:
        widgets_cfg = self._config.get("widgets", {})
        return widgets_cfg if isinstance(widgets_cfg, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def get_path(self, path: str, default: Any = None) -> Any:
        """
        Nested lookup using dot-separated path.
        Example: get_path("executor.max_lines", 1000)
        """
        if not path:
            return default

        cur: Any = self._config
        for part in path.split("."):
            if not isinstance(cur, dict):
                return default
            if part not in cur:
                return default
            cur = cur[part]
        return cur


# -----------------------
# Data root + DB helpers
# -----------------------


def get_data_root() -> Path:
    """Get the data root directory for WatchPost.

    Resolution order:
    1. WATCHPOST_DATA_HOME environment variable (if set)
    2. ~/.local/share (default, XDG_DATA_HOME is ignored)
    """
    data_home = os.getenv("WATCHPOST_DATA_HOME")
    if data_home:
        root = Path(data_home)
    else:
        root = Path.home() / ".local" / "share"

    root.mkdir(parents=True, exist_ok=True)
    return root


def investigations_dir(data_root: Path) -> Path:
    """<data_root>/watchpost/investigations"""
    return data_root / "watchpost" / "investigations"


def logs_dir(data_root: Path) -> Path:
    """<data_root>/watchpost/logs"""
    return data_root / "watchpost" / "logs"


def slugify(text: str) -> str:
    """Convert text to a filesystem-safe slug.

    Rules:
    - lowercase
    - replace any non [a-z0-9] with '_'
    - collapse repeats and trim leading/trailing '_'
    - if empty after slugify, use "investigation"
    """
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower())
    slug = slug.strip("_")
    return slug or "investigation"


def investigation_db_path(data_root: Path, name: str) -> Path:
    """Get the database file for an investigation by name.

    Example: "Red Tiger" -> <data_root>/watchpost/investigations/red_tiger.wpdb
    """
    return investigations_dir(data_root) / f"{slugify(name)}{INVESTIGATION_SUFFIX}"


# -----------------------
# Packaged defaults loading
# -----------------------


def _defaults_dir() -> Path:
    """Return the installed path to the packaged defaults directory."""
    return Path(
        importlib_resources.files("watchpost.defaults")
    )  # type: ignore[arg-type]


def load_defaults_yaml(filename: str) -> dict[str, Any]:
    """
    Load a YAML file from watchpost/defaults/.
    """
    defaults_dir = _defaults_dir()
    path = defaults_dir / filename
    if not path.exists():
        raise FileNotFoundError(
            f"Missing defaults YAML: {filename} "
            f"(looked in {defaults_dir})"
        )

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(
            f"Defaults YAML {filename} must load to a mapping/dict."
        )
    return data


def load_system_config() -> YAMLConfig:
    """
    Load system.yaml from packaged defaults and return a YAMLConfig wrapper.
    """
    return YAMLConfig(load_defaults_yaml("system.yaml"))
