# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Widget version controller.

A Widget ties a stable widget id to a sequence of generations. Editing a
field that changes the effective invocation (host-wrapped command or
execution mode) is restart-worthy:

    stop -> bump version -> persist new generation -> rebind -> start

Other edits (the display filter, layout) are saved onto the current
generation in place and never interrupt the stream.

Important boundary:
- handle_config_change() is not serialized per widget. Callers (the UI
  event loop) must not invoke it concurrently for the same widget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from .command import CommandSpec, ExecutionMode, build_invocation
from .config import YAMLConfig
from .executor import DEFAULT_MAX_LINES, CommandExecutor
from .hosts import HostRegistry
from .interfaces import InvestigationStore, LineSink
from .store import CapturedLine, Layout, WidgetSnapshot
from .utils import matches_filter
from .widgets import WidgetKind, get_kind

logger = logging.getLogger(__name__)


@dataclass
class WidgetContext:
    """Collaborators shared by every widget of one investigation."""

    store: InvestigationStore
    sink: LineSink | None = None
    hosts: HostRegistry = field(default_factory=HostRegistry)
    ssh_program: str = "ssh"
    ssh_options: tuple[str, ...] = ()
    max_lines: int = DEFAULT_MAX_LINES
    kill_timeout: float = 2.0
    kind_defaults: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_config(
        cls,
        store: InvestigationStore,
        sink: LineSink | None,
        cfg: YAMLConfig,
        hosts: HostRegistry | None = None,
    ) -> WidgetContext:
        return cls(
            store=store,
            sink=sink,
            hosts=hosts if hosts is not None else HostRegistry(store),
            ssh_program=str(cfg.get_path("remote.ssh_program", "ssh")),
            ssh_options=tuple(
                str(o) for o in cfg.get_path("remote.ssh_options", []) or []
            ),
            max_lines=int(cfg.get_path("executor.max_lines", DEFAULT_MAX_LINES)),
            kill_timeout=float(cfg.get_path("executor.kill_timeout", 2.0)),
            kind_defaults=cfg.widgets,
        )


@dataclass(frozen=True)
class RenderState:
    widget_id: int
    version: int
    widget_type: str
    title: str
    running: bool
    host: str
    lines: list[str]


class Widget:
    """One live widget: identity, current generation and its executor."""

    def __init__(
        self,
        ctx: WidgetContext,
        widget_id: int,
        kind: WidgetKind,
        config: dict[str, Any],
        version: int = 0,
        layout: Layout | None = None,
    ):
        self.ctx = ctx
        self.widget_id = widget_id
        self.kind = kind
        self.version = version
        self.config = dict(config)
        self.layout = layout if layout is not None else Layout()
        self.config_unsaved = False
        # Config of the current generation, for restart-worthiness checks
        self._applied = dict(self.config)
        self.executor = CommandExecutor(
            max_lines=ctx.max_lines, kill_timeout=ctx.kill_timeout
        )
        self.executor.selected_host = self.config.get("host", "localhost")

    # ----------------------------------------------------------------
    # Construction
    # ----------------------------------------------------------------

    @classmethod
    def create(
        cls,
        ctx: WidgetContext,
        widget_type: str,
        config: dict[str, Any] | None = None,
        widget_id: int | None = None,
        layout: Layout | None = None,
        created_at: int | None = None,
    ) -> Widget:
        """Create a new widget and persist its version 0."""
        kind = get_kind(widget_type)
        if widget_id is None:
            widget_id = ctx.store.next_widget_id()

        cfg = kind.default_config(ctx.kind_defaults.get(widget_type))
        cfg.update(config or {})
        widget = cls(ctx, widget_id, kind, cfg, version=0, layout=layout)
        ctx.store.save_widget_snapshot(
            widget_id, 0, widget_type, widget.config, widget.layout,
            created_at=created_at,
        )
        widget._bind(next_line_number=1)
        logger.info("created %s widget %d", widget_type, widget_id)
        return widget

    @classmethod
    def from_snapshot(
        cls,
        ctx: WidgetContext,
        snapshot: WidgetSnapshot,
        restore_output: bool = True,
    ) -> Widget:
        """Rebuild a live widget from a stored generation.

        Captured lines of that generation are loaded into the display
        buffer, and numbering continues after the last stored line.
        """
        kind = get_kind(snapshot.widget_type)
        cfg = kind.default_config(ctx.kind_defaults.get(snapshot.widget_type))
        cfg.update(snapshot.config)
        widget = cls(
            ctx, snapshot.widget_id, kind, cfg,
            version=snapshot.version, layout=snapshot.layout,
        )
        if restore_output:
            lines = ctx.store.get_lines(
                snapshot.widget_id, snapshot.version,
                limit=widget.executor.max_lines,
            )
            widget.executor.load_historical_output([ln.content for ln in lines])
        last = ctx.store.max_line_number(snapshot.widget_id, snapshot.version)
        widget._bind(next_line_number=last + 1)
        return widget

    def _bind(self, next_line_number: int) -> None:
        if self.ctx.sink is None:
            return
        self.executor.set_database(
            self.ctx.sink, self.widget_id, self.version, next_line_number
        )

    # ----------------------------------------------------------------
    # Commands
    # ----------------------------------------------------------------

    @property
    def widget_type(self) -> str:
        return self.kind.type_tag

    def invocation(
        self, config: dict[str, Any] | None = None
    ) -> tuple[CommandSpec, ExecutionMode]:
        """The exact command and mode this config would run."""
        cfg = self.config if config is None else config
        host = self.ctx.hosts.resolve(str(cfg.get("host", "localhost")))
        spec = build_invocation(
            self.kind.build_command(cfg),
            host,
            ssh_program=self.ctx.ssh_program,
            ssh_options=self.ctx.ssh_options,
        )
        return spec, self.kind.execution_mode(cfg)

    def start(self) -> bool:
        spec, mode = self.invocation()
        self.executor.selected_host = self.config.get("host", "localhost")
        return self.executor.start(spec, mode)

    def stop(self) -> None:
        self.executor.stop()

    def is_running(self) -> bool:
        return self.executor.is_running()

    def render_state(self) -> RenderState:
        pattern = str(self.config.get("filter", ""))
        return RenderState(
            widget_id=self.widget_id,
            version=self.version,
            widget_type=self.widget_type,
            title=self.kind.title,
            running=self.executor.is_running(),
            host=self.executor.selected_host,
            lines=[
                line for line in self.executor.output()
                if matches_filter(line, pattern)
            ],
        )

    # ----------------------------------------------------------------
    # Config changes
    # ----------------------------------------------------------------

    def update_config(self, **changes: Any) -> None:
        """Stage config edits; handle_config_change() applies them."""
        for key, value in changes.items():
            if self.config.get(key) != value:
                self.config[key] = value
                self.config_unsaved = True

    def set_host(self, alias: str) -> None:
        self.update_config(host=alias)

    def needs_restart(self) -> bool:
        """True if staged edits change the command or execution mode."""
        if not self.config_unsaved:
            return False
        return self.invocation(self.config) != self.invocation(self._applied)

    def handle_config_change(self, at: int | None = None) -> bool:
        """Apply staged edits.

        Args:
            at: created_at for a new generation (default: now)

        Returns:
            True if a new generation was created
        """
        if not self.config_unsaved:
            return False

        if not self.needs_restart():
            self.ctx.store.save_widget_snapshot(
                self.widget_id, self.version, self.widget_type,
                self.config, self.layout,
            )
            self._applied = dict(self.config)
            self.config_unsaved = False
            return False

        self.stop()
        new_version = self.version + 1
        self.ctx.store.bump_widget_version(
            self.widget_id, new_version, self.widget_type,
            self.config, self.layout, created_at=at,
        )
        self.version = new_version
        self.config_unsaved = False
        self._applied = dict(self.config)
        self._bind(next_line_number=1)
        logger.info(
            "widget %d: restart-worthy edit, now version %d",
            self.widget_id, self.version,
        )
        self.start()
        return True

    def move(
        self,
        x: float,
        y: float,
        width: float | None = None,
        height: float | None = None,
        collapsed: bool | None = None,
    ) -> None:
        """Update layout hints on the current generation."""
        self.layout = replace(
            self.layout,
            x=x,
            y=y,
            width=self.layout.width if width is None else width,
            height=self.layout.height if height is None else height,
            collapsed=self.layout.collapsed if collapsed is None else collapsed,
        )
        self.ctx.store.save_widget_snapshot(
            self.widget_id, self.version, self.widget_type,
            self._applied, self.layout,
        )

    # ----------------------------------------------------------------
    # Removal
    # ----------------------------------------------------------------

    def remove(self, at: int | None = None) -> None:
        """Stop and archive; history stays queryable."""
        self.stop()
        self.ctx.store.archive(self.widget_id, at=at)

    def discard(self) -> bool:
        """Stop and forget the widget if it never captured anything.

        Lines still queued for storage count as captured: the worker is
        joined and the sink flushed before the store decides.

        Returns:
            True if its rows were deleted, False if it was archived instead
        """
        self.stop()
        self.executor.wait(timeout=self.ctx.kill_timeout + 1.0)
        if self.ctx.sink is not None:
            self.ctx.sink.flush()
        return self.ctx.store.discard_widget(self.widget_id)


# ----------------------------------------------------------------
# Workspace helpers
# ----------------------------------------------------------------


def restore_widgets(ctx: WidgetContext) -> list[Widget]:
    """Live widgets for every current generation in the store."""
    return [
        Widget.from_snapshot(ctx, snapshot)
        for snapshot in ctx.store.load_current_widgets()
    ]


@dataclass(frozen=True)
class WorkspaceFrame:
    snapshot: WidgetSnapshot
    lines: list[CapturedLine]


def reconstruct_workspace(
    store: InvestigationStore, at: int, limit: int | None = None
) -> list[WorkspaceFrame]:
    """What the workspace looked like at ``at``.

    For every widget generation live at that instant, the lines it had
    captured up to then.
    """
    return [
        WorkspaceFrame(
            snapshot=snapshot,
            lines=store.get_lines(
                snapshot.widget_id, snapshot.version, until=at, limit=limit
            ),
        )
        for snapshot in store.load_widgets_as_of(at)
    ]
