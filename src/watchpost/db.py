# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Low-level database schema for WatchPost investigation files.

Handles:
- Schema creation and migration
- Table definitions and column management
- Connection settings shared by every store operation

This module is the only place that creates tables. SQLiteStore assumes the
schema exists.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

SCHEMA_VERSION = "1.1"

# Seconds a connection waits on a locked database before failing.
BUSY_TIMEOUT = 30.0


class StoreUnavailableError(Exception):
    """An investigation database could not be opened or migrated."""


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection with the settings every store operation uses."""
    return sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT)


def ensure_schema(db_path: Path) -> None:
    """Create or migrate the investigation schema.

    Creates required tables if they don't exist:
    - metadata: single row describing the investigation
    - widgets: one row per (widget id, version) generation
    - raw_data: append-only captured lines
    - hosts: named execution targets
    - widget_ids: reserved widget ids (never reused)

    Handles migration from the legacy layout (single-row-per-widget table,
    key/value metadata, unversioned raw_data).

    Args:
        db_path: Path to SQLite database file

    This function is idempotent - safe to call multiple times.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = connect(db_path)
    try:
        # WAL lets readers keep a consistent snapshot while writers commit
        conn.execute("PRAGMA journal_mode = WAL")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metadata (
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                color_rgb TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                version TEXT NOT NULL DEFAULT '1.0'
            )
            """
        )

        _migrate_widgets(conn)

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS widgets (
                id INTEGER NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                widget_type TEXT NOT NULL,
                config_json TEXT NOT NULL,
                position_x REAL NOT NULL,
                position_y REAL NOT NULL,
                size_x REAL NOT NULL,
                size_y REAL NOT NULL,
                created_at INTEGER NOT NULL,
                collapsed INTEGER DEFAULT 0,
                archived_at INTEGER DEFAULT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS raw_data (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                widget_id INTEGER NOT NULL,
                widget_version INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                line_content TEXT NOT NULL,
                line_number INTEGER NOT NULL
            )
            """
        )

        # Migration: raw_data rows written before widgets were versioned
        cols = _columns(conn, "raw_data")
        if "widget_version" not in cols:
            conn.execute(
                "ALTER TABLE raw_data "
                "ADD COLUMN widget_version INTEGER NOT NULL DEFAULT 0"
            )

        # Every widget id ever handed out; rows outlive deleted widgets
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS widget_ids (
                id INTEGER PRIMARY KEY
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS hosts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                ssh_alias TEXT NOT NULL UNIQUE,
                description TEXT NOT NULL DEFAULT ''
            )
            """
        )

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_raw_data_widget_version "
            "ON raw_data(widget_id, widget_version, line_number)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_raw_data_timestamp "
            "ON raw_data(timestamp)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_widgets_archived_at "
            "ON widgets(archived_at)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_widgets_created_at "
            "ON widgets(id, created_at)"
        )

        _migrate_metadata(conn)

        conn.commit()
    finally:
        conn.close()


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    cur = conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cur.fetchall()}


def _migrate_widgets(conn: sqlite3.Connection) -> None:
    """Rebuild a legacy widgets table (one row per id, `active` flag)."""
    cols = _columns(conn, "widgets")
    if not cols or "version" in cols:
        return

    conn.execute("ALTER TABLE widgets RENAME TO widgets_old")
    conn.execute(
        """
        CREATE TABLE widgets (
            id INTEGER NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            widget_type TEXT NOT NULL,
            config_json TEXT NOT NULL,
            position_x REAL NOT NULL,
            position_y REAL NOT NULL,
            size_x REAL NOT NULL,
            size_y REAL NOT NULL,
            created_at INTEGER NOT NULL,
            collapsed INTEGER DEFAULT 0,
            archived_at INTEGER DEFAULT NULL,
            PRIMARY KEY (id, version)
        )
        """
    )
    # Inactive legacy rows become archived at their creation instant
    archived_expr = (
        "CASE WHEN active = 1 THEN NULL ELSE created_at END"
        if "active" in cols else "NULL"
    )
    conn.execute(
        f"""
        INSERT INTO widgets (
            id, version, widget_type, config_json,
            position_x, position_y, size_x, size_y,
            created_at, archived_at
        )
        SELECT id, 0, widget_type, config_json,
               position_x, position_y, size_x, size_y,
               created_at, {archived_expr}
        FROM widgets_old
        """
    )
    conn.execute("DROP TABLE widgets_old")


def _migrate_metadata(conn: sqlite3.Connection) -> None:
    """Fold a legacy key/value investigation_meta table into metadata."""
    if not _columns(conn, "investigation_meta"):
        return

    rows = dict(
        conn.execute("SELECT key, value FROM investigation_meta").fetchall()
    )
    has_row = conn.execute("SELECT COUNT(*) FROM metadata").fetchone()[0]
    if not has_row:
        conn.execute(
            """
            INSERT INTO metadata
            (name, description, color_rgb, created_at, version)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                rows.get("name", ""),
                rows.get("description", ""),
                rows.get("color_rgb", "0.2,0.4,0.85"),
                int(rows.get("created_at", "0") or 0),
                SCHEMA_VERSION,
            ),
        )
    conn.execute("DROP TABLE investigation_meta")
