# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
SQLite-backed investigation store for WatchPost.

Two kinds of data live here:
- widget snapshots, one row per (widget id, version) with a validity
  interval [created_at, archived_at)
- captured lines, append-only, keyed by (widget id, version, line number)

Every operation opens its own connection, so persistence writer threads and
the UI thread never share one.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from . import db
from .hosts import Host
from .utils import now_us

DEFAULT_COLOR = (0.2, 0.4, 0.85)

_SNAPSHOT_COLUMNS = """
    w.id, w.version, w.widget_type, w.config_json,
    w.position_x, w.position_y, w.size_x, w.size_y, w.collapsed,
    w.created_at, w.archived_at
"""


@dataclass(frozen=True)
class Layout:
    x: float = 0.0
    y: float = 0.0
    width: float = 600.0
    height: float = 400.0
    collapsed: bool = False


@dataclass(frozen=True)
class WidgetSnapshot:
    widget_id: int
    version: int
    widget_type: str
    config: dict[str, Any]
    layout: Layout
    created_at: int
    archived_at: int | None = None

    def is_valid_at(self, timestamp: int) -> bool:
        """True if this generation was live at ``timestamp``."""
        if self.created_at > timestamp:
            return False
        return self.archived_at is None or self.archived_at > timestamp


@dataclass(frozen=True)
class CapturedLine:
    widget_id: int
    widget_version: int
    timestamp: int
    line_number: int
    content: str


@dataclass(frozen=True)
class InvestigationMetadata:
    name: str
    description: str
    color: tuple[float, float, float]
    created_at: int
    schema_version: str


def _snapshot_from_row(row: tuple) -> WidgetSnapshot:
    (widget_id, version, widget_type, config_json,
     pos_x, pos_y, size_x, size_y, collapsed,
     created_at, archived_at) = row
    return WidgetSnapshot(
        widget_id=widget_id,
        version=version,
        widget_type=widget_type,
        config=json.loads(config_json),
        layout=Layout(
            x=pos_x, y=pos_y, width=size_x, height=size_y,
            collapsed=bool(collapsed),
        ),
        created_at=created_at,
        archived_at=archived_at,
    )


def _parse_color(value: str) -> tuple[float, float, float]:
    parts = value.split(",")
    out = []
    for i, default in enumerate(DEFAULT_COLOR):
        try:
            out.append(float(parts[i]))
        except (IndexError, ValueError):
            out.append(default)
    return (out[0], out[1], out[2])


def _format_color(color: tuple[float, float, float]) -> str:
    return ",".join(str(c) for c in color)


class SQLiteStore:
    """SQLite implementation of the InvestigationStore protocol."""

    def __init__(self, db_path: Path):
        """Initialize store with database path.

        Args:
            db_path: Path to SQLite database file (must have schema)

        Note:
            Store does NOT create schema. Schema must be created by
            db.ensure_schema() before constructing SQLiteStore.
        """
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        return db.connect(self.db_path)

    # ----------------------------------------------------------------
    # Metadata
    # ----------------------------------------------------------------

    def init_metadata(
        self,
        name: str,
        description: str,
        color: tuple[float, float, float] = DEFAULT_COLOR,
        created_at: int | None = None,
    ) -> None:
        """Write the single metadata row if it does not exist yet."""
        conn = self._connect()
        try:
            has_row = conn.execute(
                "SELECT COUNT(*) FROM metadata"
            ).fetchone()[0]
            if not has_row:
                conn.execute(
                    """
                    INSERT INTO metadata
                    (name, description, color_rgb, created_at, version)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        name,
                        description,
                        _format_color(color),
                        created_at if created_at is not None else now_us(),
                        db.SCHEMA_VERSION,
                    ),
                )
                conn.commit()
        finally:
            conn.close()

    def get_metadata(self) -> InvestigationMetadata | None:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT name, description, color_rgb, created_at, version
                FROM metadata LIMIT 1
                """
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return InvestigationMetadata(
            name=row[0],
            description=row[1],
            color=_parse_color(row[2]),
            created_at=row[3],
            schema_version=row[4],
        )

    def update_metadata(
        self,
        name: str,
        description: str,
        color: tuple[float, float, float],
    ) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "UPDATE metadata SET name = ?, description = ?, color_rgb = ?",
                (name, description, _format_color(color)),
            )
            conn.commit()
        finally:
            conn.close()

    # ----------------------------------------------------------------
    # Hosts
    # ----------------------------------------------------------------

    def add_host(self, name: str, alias: str, description: str = "") -> Host:
        """Insert a host; an existing alias is returned unchanged."""
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT OR IGNORE INTO hosts (name, ssh_alias, description)
                VALUES (?, ?, ?)
                """,
                (name, alias, description),
            )
            conn.commit()
            row = conn.execute(
                """
                SELECT id, name, ssh_alias, description
                FROM hosts WHERE ssh_alias = ?
                """,
                (alias,),
            ).fetchone()
        finally:
            conn.close()
        return Host(id=row[0], name=row[1], alias=row[2], description=row[3])

    def list_hosts(self) -> list[Host]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id, name, ssh_alias, description FROM hosts ORDER BY id"
            ).fetchall()
        finally:
            conn.close()
        return [
            Host(id=r[0], name=r[1], alias=r[2], description=r[3])
            for r in rows
        ]

    # ----------------------------------------------------------------
    # Widget snapshots
    # ----------------------------------------------------------------

    def next_widget_id(self) -> int:
        """Reserve an id greater than every id ever used in this file.

        Reserved ids stay in widget_ids after a widget is discarded, so an
        id is never handed out twice.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT COALESCE(MAX(m), 0) FROM (
                    SELECT MAX(id) AS m FROM widget_ids
                    UNION ALL SELECT MAX(id) FROM widgets
                    UNION ALL SELECT MAX(widget_id) FROM raw_data
                )
                """
            ).fetchone()
            widget_id = row[0] + 1
            conn.execute(
                "INSERT INTO widget_ids (id) VALUES (?)", (widget_id,)
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return widget_id

    def save_widget_snapshot(
        self,
        widget_id: int,
        version: int,
        widget_type: str,
        config: dict[str, Any],
        layout: Layout,
        created_at: int | None = None,
    ) -> None:
        """Insert or update the row for (widget_id, version).

        Re-saving an existing generation updates its payload and layout but
        never moves created_at or archived_at.
        """
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO widgets (
                    id, version, widget_type, config_json,
                    position_x, position_y, size_x, size_y,
                    collapsed, created_at, archived_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
                ON CONFLICT(id, version) DO UPDATE SET
                    widget_type = excluded.widget_type,
                    config_json = excluded.config_json,
                    position_x = excluded.position_x,
                    position_y = excluded.position_y,
                    size_x = excluded.size_x,
                    size_y = excluded.size_y,
                    collapsed = excluded.collapsed
                """,
                (
                    widget_id,
                    version,
                    widget_type,
                    json.dumps(config, sort_keys=True),
                    layout.x,
                    layout.y,
                    layout.width,
                    layout.height,
                    1 if layout.collapsed else 0,
                    created_at if created_at is not None else now_us(),
                ),
            )
            conn.execute(
                "INSERT OR IGNORE INTO widget_ids (id) VALUES (?)",
                (widget_id,),
            )
            conn.commit()
        finally:
            conn.close()

    def bump_widget_version(
        self,
        widget_id: int,
        new_version: int,
        widget_type: str,
        config: dict[str, Any],
        layout: Layout,
        created_at: int | None = None,
    ) -> int:
        """Start a new generation and close the previous one atomically.

        Older non-archived rows get archived_at = created_at of the new row,
        so validity intervals of one widget never overlap.

        Returns:
            Number of previous rows archived

        Raises:
            ValueError: if new_version is not above every stored version
        """
        if created_at is None:
            created_at = now_us()

        conn = self._connect()
        try:
            latest = conn.execute(
                "SELECT MAX(version) FROM widgets WHERE id = ?",
                (widget_id,),
            ).fetchone()[0]
            if latest is not None and new_version <= latest:
                raise ValueError(
                    f"Widget {widget_id}: version {new_version} is not "
                    f"above stored version {latest}"
                )

            cur = conn.execute(
                """
                UPDATE widgets SET archived_at = ?
                WHERE id = ? AND archived_at IS NULL AND version < ?
                """,
                (created_at, widget_id, new_version),
            )
            archived = cur.rowcount
            conn.execute(
                """
                INSERT INTO widgets (
                    id, version, widget_type, config_json,
                    position_x, position_y, size_x, size_y,
                    collapsed, created_at, archived_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (
                    widget_id,
                    new_version,
                    widget_type,
                    json.dumps(config, sort_keys=True),
                    layout.x,
                    layout.y,
                    layout.width,
                    layout.height,
                    1 if layout.collapsed else 0,
                    created_at,
                ),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return archived

    def archive(self, widget_id: int, at: int | None = None) -> int:
        """Stamp archived_at on the widget's live row(s).

        Returns:
            Number of rows archived (0 if already archived or unknown)
        """
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                UPDATE widgets SET archived_at = ?
                WHERE id = ? AND archived_at IS NULL
                """,
                (at if at is not None else now_us(), widget_id),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def discard_widget(self, widget_id: int) -> bool:
        """Delete a widget's rows if it never captured anything.

        A widget with captured lines is archived instead, so its history
        stays reconstructable.

        Returns:
            True if rows were deleted, False if the widget was archived
        """
        conn = self._connect()
        try:
            captured = conn.execute(
                "SELECT COUNT(*) FROM raw_data WHERE widget_id = ?",
                (widget_id,),
            ).fetchone()[0]
            if captured:
                conn.execute(
                    """
                    UPDATE widgets SET archived_at = ?
                    WHERE id = ? AND archived_at IS NULL
                    """,
                    (now_us(), widget_id),
                )
            else:
                conn.execute("DELETE FROM widgets WHERE id = ?", (widget_id,))
            conn.commit()
        finally:
            conn.close()
        return not captured

    def load_current_widgets(self) -> list[WidgetSnapshot]:
        """Latest non-archived generation of every live widget."""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM widgets w
                WHERE w.archived_at IS NULL
                  AND w.version = (
                      SELECT MAX(w2.version) FROM widgets w2
                      WHERE w2.id = w.id AND w2.archived_at IS NULL
                  )
                ORDER BY w.id
                """
            ).fetchall()
        finally:
            conn.close()
        return [_snapshot_from_row(r) for r in rows]

    def load_widgets_as_of(self, timestamp: int) -> list[WidgetSnapshot]:
        """Generations that were live at ``timestamp``, one per widget.

        A row qualifies when created_at <= timestamp and it was not yet
        archived (archived_at is NULL or > timestamp). If several rows of one
        widget qualify, the highest version wins.
        """
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM widgets w
                WHERE w.created_at <= :ts
                  AND (w.archived_at IS NULL OR w.archived_at > :ts)
                  AND w.version = (
                      SELECT MAX(w2.version) FROM widgets w2
                      WHERE w2.id = w.id
                        AND w2.created_at <= :ts
                        AND (w2.archived_at IS NULL OR w2.archived_at > :ts)
                  )
                ORDER BY w.id
                """,
                {"ts": timestamp},
            ).fetchall()
        finally:
            conn.close()
        return [_snapshot_from_row(r) for r in rows]

    def load_widget_history(self, widget_id: int) -> list[WidgetSnapshot]:
        """Every generation of one widget, oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM widgets w
                WHERE w.id = ?
                ORDER BY w.version
                """,
                (widget_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_snapshot_from_row(r) for r in rows]

    # ----------------------------------------------------------------
    # Captured lines
    # ----------------------------------------------------------------

    def record_line(
        self,
        widget_id: int,
        widget_version: int,
        content: str,
        line_number: int,
        timestamp: int | None = None,
    ) -> None:
        """Append one line to a generation's stream.

        line_number is supplied by the caller and is expected to increase
        per (widget_id, widget_version); it is not checked here.
        """
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO raw_data (
                    widget_id, widget_version, timestamp,
                    line_content, line_number
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    widget_id,
                    widget_version,
                    timestamp if timestamp is not None else now_us(),
                    content,
                    line_number,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_lines(
        self,
        widget_id: int,
        widget_version: int,
        until: int | None = None,
        limit: int | None = None,
    ) -> list[CapturedLine]:
        """Lines of one generation in line_number order.

        Args:
            until: only lines captured at or before this timestamp
            limit: keep only the newest ``limit`` lines
        """
        sql = """
            SELECT widget_id, widget_version, timestamp,
                   line_number, line_content
            FROM raw_data
            WHERE widget_id = ? AND widget_version = ?
        """
        params: list[Any] = [widget_id, widget_version]
        if until is not None:
            sql += " AND timestamp <= ?"
            params.append(until)

        if limit is not None:
            sql += " ORDER BY line_number DESC, id DESC LIMIT ?"
            params.append(limit)
        else:
            sql += " ORDER BY line_number, id"

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        if limit is not None:
            rows.reverse()
        return [CapturedLine(*r) for r in rows]

    def count_lines(self, widget_id: int, widget_version: int) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM raw_data
                WHERE widget_id = ? AND widget_version = ?
                """,
                (widget_id, widget_version),
            ).fetchone()
        finally:
            conn.close()
        return row[0]

    def max_line_number(self, widget_id: int, widget_version: int) -> int:
        """Highest line number stored for a generation (0 if none)."""
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT COALESCE(MAX(line_number), 0) FROM raw_data
                WHERE widget_id = ? AND widget_version = ?
                """,
                (widget_id, widget_version),
            ).fetchone()
        finally:
            conn.close()
        return row[0]
