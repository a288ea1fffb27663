# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Operator-facing logging for WatchPost.

Captured command output never goes through here: the display buffer is the
user-facing error surface. This module is for the operator channel only
(persistence failures, store problems, crashes).
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime
from pathlib import Path

from . import config as cfg_module

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_HANDLER_NAME = "watchpost-file"


def configure_logging(
    data_root: Path | None = None, level: int = logging.INFO
) -> Path:
    """Attach a file handler for the ``watchpost`` logger hierarchy.

    Safe to call more than once; the handler is only installed once.

    Returns:
        Path of the log file
    """
    if data_root is None:
        data_root = cfg_module.get_data_root()
    log_dir = cfg_module.logs_dir(data_root)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "watchpost.log"

    root = logging.getLogger("watchpost")
    root.setLevel(level)
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return log_path

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    return log_path


def write_crash_log(
    error: Exception,
    widget_id: int | None = None,
    widget_version: int | None = None,
    command: str = "",
    db_path: Path | None = None,
) -> None:
    """Write an entry to the crash log.

    Appends to <data_root>/watchpost/logs/crash.log (never overwrites).
    Only creates the log directory when actually needed.
    """
    try:
        log_dir = cfg_module.logs_dir(cfg_module.get_data_root())
        log_dir.mkdir(parents=True, exist_ok=True)

        lines = [f"{datetime.now().isoformat()}"]
        if widget_id is not None:
            lines.append(f"widget={widget_id}")
        if widget_version is not None:
            lines.append(f"version={widget_version}")
        if command:
            lines.append(f"command={command}")
        if db_path:
            lines.append(f"db_path={db_path}")

        lines.append(f"error={type(error).__name__}: {error}")
        lines.append("traceback:")
        lines.append(traceback.format_exc())
        lines.append("----")

        with (log_dir / "crash.log").open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

    except Exception:
        # Already in an error state; the crash log is best effort.
        logging.getLogger(__name__).debug(
            "could not write crash log", exc_info=True
        )
