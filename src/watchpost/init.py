# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Opening and creating investigation databases.

Responsibilities:
- Investigation DB creation (schema + metadata row)
- Opening an existing investigation (schema migration only)
- Wiring store, persistence queue, host registry and widget context

Important boundary:
- The registry of investigations (list/archive/delete across files) is
  not handled here; callers pass explicit paths or names.
- A failure opening one investigation raises StoreUnavailableError and
  affects nothing else.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from . import config, db
from .controller import Widget, WidgetContext, restore_widgets
from .hosts import HostRegistry
from .persistence import DEFAULT_QUEUE_SIZE, PersistenceQueue
from .store import DEFAULT_COLOR, SQLiteStore

logger = logging.getLogger(__name__)


@dataclass
class Investigation:
    """An open investigation and its background writers."""

    path: Path
    store: SQLiteStore
    persistence: PersistenceQueue
    hosts: HostRegistry
    context: WidgetContext

    def restore_widgets(self) -> list[Widget]:
        return restore_widgets(self.context)

    def close(self) -> None:
        """Drain pending line writes and stop the writer threads."""
        self.persistence.close()

    def __enter__(self) -> Investigation:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def create_investigation(
    name: str,
    description: str = "",
    color: tuple[float, float, float] = DEFAULT_COLOR,
    data_root: Path | None = None,
    system_config: config.YAMLConfig | None = None,
) -> Investigation:
    """Create a new investigation file under the data root and open it.

    Raises:
        StoreUnavailableError: if the file already exists or cannot be created
    """
    if data_root is None:
        data_root = config.get_data_root()
    path = config.investigation_db_path(data_root, name)
    if path.exists():
        raise db.StoreUnavailableError(
            f"Investigation already exists: {path}"
        )

    try:
        db.ensure_schema(path)
        SQLiteStore(path).init_metadata(
            name, description or f"Investigation: {name}", color
        )
    except (sqlite3.Error, OSError) as e:
        raise db.StoreUnavailableError(
            f"Could not create investigation {path}: {e}"
        ) from e

    logger.info("created investigation %s at %s", name, path)
    return open_investigation(path, system_config)


def open_investigation(
    path: Path,
    system_config: config.YAMLConfig | None = None,
) -> Investigation:
    """Open an existing investigation file, migrating its schema if needed.

    Raises:
        StoreUnavailableError: missing file, not a database, or failed
            migration
    """
    if not path.exists():
        raise db.StoreUnavailableError(f"Investigation not found: {path}")

    try:
        db.ensure_schema(path)
    except (sqlite3.Error, OSError) as e:
        logger.error("cannot open investigation %s: %s", path, e)
        raise db.StoreUnavailableError(
            f"Could not open investigation {path}: {e}"
        ) from e

    if system_config is None:
        system_config = config.load_system_config()

    store = SQLiteStore(path)
    persistence = PersistenceQueue(
        store,
        maxsize=int(
            system_config.get_path("persistence.queue_size", DEFAULT_QUEUE_SIZE)
        ),
        workers=int(system_config.get_path("persistence.workers", 1)),
    )
    hosts = HostRegistry(store)
    hosts.load()
    context = WidgetContext.from_config(store, persistence, system_config, hosts)

    return Investigation(
        path=path,
        store=store,
        persistence=persistence,
        hosts=hosts,
        context=context,
    )
