# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Protocol definitions for dependency injection.

These interfaces keep the executor, the persistence queue and the widget
controller independent of the concrete SQLite store.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .hosts import Host  # pragma: no cover
    from .store import CapturedLine, Layout, WidgetSnapshot  # pragma: no cover


class LineStore(Protocol):
    """Append-only captured line storage."""

    def record_line(
        self,
        widget_id: int,
        widget_version: int,
        content: str,
        line_number: int,
        timestamp: int | None = None,
    ) -> None:
        """Append one captured line to a generation's stream."""
        ...


class LineSink(Protocol):
    """Where an executor hands captured lines for durable storage.

    Implementations must not block the caller.
    """

    def submit(
        self,
        widget_id: int,
        widget_version: int,
        content: str,
        line_number: int,
        timestamp: int,
    ) -> bool:
        """Queue a line for storage; False if it was dropped."""
        ...

    def flush(self) -> None:
        """Block until every line submitted so far has been handled."""
        ...


class HostStore(Protocol):
    """Persistence for the host registry."""

    def add_host(self, name: str, alias: str, description: str = "") -> Host:
        ...

    def list_hosts(self) -> list[Host]:
        ...


class InvestigationStore(LineStore, HostStore, Protocol):
    """Everything the widget controller needs from a store."""

    def save_widget_snapshot(
        self,
        widget_id: int,
        version: int,
        widget_type: str,
        config: dict[str, Any],
        layout: Layout,
        created_at: int | None = None,
    ) -> None:
        ...

    def bump_widget_version(
        self,
        widget_id: int,
        new_version: int,
        widget_type: str,
        config: dict[str, Any],
        layout: Layout,
        created_at: int | None = None,
    ) -> int:
        ...

    def load_current_widgets(self) -> list[WidgetSnapshot]:
        ...

    def load_widgets_as_of(self, timestamp: int) -> list[WidgetSnapshot]:
        ...

    def get_lines(
        self,
        widget_id: int,
        widget_version: int,
        until: int | None = None,
        limit: int | None = None,
    ) -> list[CapturedLine]:
        ...

    def max_line_number(self, widget_id: int, widget_version: int) -> int:
        ...

    def archive(self, widget_id: int, at: int | None = None) -> int:
        ...

    def discard_widget(self, widget_id: int) -> bool:
        ...
