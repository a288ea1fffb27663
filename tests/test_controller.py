"""
Tests for watchpost.controller: widget lifecycle, versioning, removal and time travel.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from watchpost import db
from watchpost.controller import (
    Widget,
    WidgetContext,
    reconstruct_workspace,
    restore_widgets,
)
from watchpost.executor import COMPLETED_MARKER
from watchpost.hosts import HostRegistry
from watchpost.persistence import PersistenceQueue
from watchpost.store import Layout, SQLiteStore


class DirectSink:
    """Writes lines synchronously so tests can read them back at once."""

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def submit(self, widget_id, widget_version, content, line_number, timestamp):
        self.store.record_line(
            widget_id, widget_version, content, line_number, timestamp
        )
        return True

    def flush(self) -> None:
        pass


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    path = tmp_path / "case.wpdb"
    db.ensure_schema(path)
    return SQLiteStore(path)


@pytest.fixture
def ctx(store: SQLiteStore) -> WidgetContext:
    return WidgetContext(
        store=store, sink=DirectSink(store), hosts=HostRegistry(store)
    )


@pytest.fixture
def widgets():
    created: list[Widget] = []
    yield created
    for w in created:
        w.stop()
        w.executor.wait(timeout=5)


def _contents(store: SQLiteStore, widget_id: int, version: int) -> list[str]:
    return [ln.content for ln in store.get_lines(widget_id, version)]


# ----------------------------------------------------------------
# Creation and restore
# ----------------------------------------------------------------


def test_create_persists_version_zero(
    ctx: WidgetContext, store: SQLiteStore
) -> None:
    w = Widget.create(ctx, "cpu_monitor", {"interval_seconds": 5})

    (snap,) = store.load_current_widgets()
    assert (snap.widget_id, snap.version) == (w.widget_id, 0)
    assert snap.widget_type == "cpu_monitor"
    assert snap.config["interval_seconds"] == 5
    assert snap.config["host"] == "localhost"
    assert w.executor.binding == (w.widget_id, 0)


def test_create_assigns_fresh_ids(ctx: WidgetContext) -> None:
    first = Widget.create(ctx, "system_info")
    second = Widget.create(ctx, "system_info")
    assert second.widget_id == first.widget_id + 1


def test_create_rejects_unknown_type(ctx: WidgetContext) -> None:
    with pytest.raises(ValueError):
        Widget.create(ctx, "teapot_monitor")


def test_from_snapshot_restores_buffer_and_continues_numbering(
    ctx: WidgetContext, store: SQLiteStore
) -> None:
    """
    A restored widget shows its stored lines and appends after the last one.
    """
    w = Widget.create(ctx, "raw_command", {"command": "uptime"})
    for line in ("a", "b", "c"):
        w.executor.add_output(line)

    (snap,) = store.load_current_widgets()
    restored = Widget.from_snapshot(ctx, snap)
    assert restored.executor.output() == ["a", "b", "c"]

    restored.executor.add_output("d")
    assert store.max_line_number(w.widget_id, 0) == 4
    # Replay did not duplicate anything
    assert _contents(store, w.widget_id, 0) == ["a", "b", "c", "d"]


def test_from_snapshot_loads_only_newest_lines(store: SQLiteStore) -> None:
    ctx = WidgetContext(store=store, sink=DirectSink(store), max_lines=2)
    w = Widget.create(ctx, "raw_command", {"command": "uptime"})
    for line in ("a", "b", "c"):
        w.executor.add_output(line)

    restored = Widget.from_snapshot(ctx, store.load_current_widgets()[0])
    assert restored.executor.output() == ["b", "c"]


def test_restore_widgets_skips_removed(ctx: WidgetContext) -> None:
    keep = Widget.create(ctx, "system_info")
    gone = Widget.create(ctx, "process_monitor")
    gone.remove()

    restored = restore_widgets(ctx)
    assert [w.widget_id for w in restored] == [keep.widget_id]
    assert restored[0].widget_type == "system_info"


# ----------------------------------------------------------------
# Config changes
# ----------------------------------------------------------------


def test_command_edit_creates_new_generation(
    ctx: WidgetContext, store: SQLiteStore, widgets: list
) -> None:
    """
    A command change stops, bumps the version and restarts; lines of each
    run stay with the generation that produced them.
    """
    w = Widget.create(
        ctx, "raw_command", {"command": "echo one"}, created_at=1000
    )
    widgets.append(w)
    w.start()
    assert w.executor.wait(timeout=10)

    w.update_config(command="echo two")
    assert w.needs_restart()
    assert w.handle_config_change(at=2000) is True
    assert w.executor.wait(timeout=10)

    assert w.version == 1
    assert not w.config_unsaved
    assert w.executor.binding == (w.widget_id, 1)
    assert _contents(store, w.widget_id, 0) == ["one", COMPLETED_MARKER]
    assert _contents(store, w.widget_id, 1) == ["two", COMPLETED_MARKER]

    (before,) = store.load_widgets_as_of(1500)
    (after,) = store.load_widgets_as_of(2500)
    assert before.config["command"] == "echo one"
    assert after.config["command"] == "echo two"


def test_line_numbers_continue_across_runs_of_one_generation(
    ctx: WidgetContext, store: SQLiteStore, widgets: list
) -> None:
    w = Widget.create(ctx, "raw_command", {"command": "echo a"})
    widgets.append(w)

    for _ in range(2):
        assert w.start()
        assert w.executor.wait(timeout=10)

    numbers = [ln.line_number for ln in store.get_lines(w.widget_id, 0)]
    assert numbers == [1, 2, 3, 4]


def test_filter_edit_does_not_interrupt_stream(
    ctx: WidgetContext, store: SQLiteStore, widgets: list
) -> None:
    """
    Display-only edits are saved in place; the running command keeps going.
    """
    w = Widget.create(
        ctx, "raw_command",
        {"command": "echo tick; sleep 30", "mode": "continuous"},
    )
    widgets.append(w)
    w.start()
    assert _wait_for(lambda: "tick" in w.executor.output())

    w.update_config(filter="tick")
    assert not w.needs_restart()
    assert w.handle_config_change() is False

    assert w.is_running()
    assert w.version == 0
    (snap,) = store.load_current_widgets()
    assert snap.config["filter"] == "tick"
    assert len(store.load_widget_history(w.widget_id)) == 1


def test_host_change_is_restart_worthy(ctx: WidgetContext) -> None:
    w = Widget.create(ctx, "raw_command", {"command": "uptime"})

    w.set_host("prod-db")
    assert w.needs_restart()
    spec, _ = w.invocation()
    assert spec.program == "ssh"
    assert "prod-db" in spec.args

    # Reverting the edit leaves nothing to restart
    w.set_host("localhost")
    assert not w.needs_restart()


def test_unchanged_value_is_not_an_edit(ctx: WidgetContext) -> None:
    w = Widget.create(ctx, "cpu_monitor")
    w.update_config(interval_seconds=2)
    assert not w.config_unsaved
    assert w.handle_config_change() is False


def test_render_state_applies_filter(ctx: WidgetContext) -> None:
    w = Widget.create(ctx, "raw_command", {"command": "dmesg"})
    for line in ("ERROR disk", "ok", "error net"):
        w.executor.add_output(line)

    w.update_config(filter="error")
    state = w.render_state()

    assert state.lines == ["ERROR disk", "error net"]
    assert state.title == "Raw Command"
    assert state.version == 0
    assert not state.running
    # Buffer itself is untouched
    assert len(w.executor.output()) == 3


def test_move_updates_layout_in_place(
    ctx: WidgetContext, store: SQLiteStore
) -> None:
    w = Widget.create(ctx, "system_info", layout=Layout(x=1.0, y=2.0))
    w.move(100.0, 200.0, width=300.0, collapsed=True)

    (snap,) = store.load_widget_history(w.widget_id)
    assert snap.version == 0
    assert snap.layout == Layout(
        x=100.0, y=200.0, width=300.0, height=400.0, collapsed=True
    )


# ----------------------------------------------------------------
# Removal
# ----------------------------------------------------------------


def test_remove_archives_widget(
    ctx: WidgetContext, store: SQLiteStore
) -> None:
    w = Widget.create(ctx, "system_info", created_at=1000)
    w.remove(at=2000)

    assert store.load_current_widgets() == []
    assert [s.widget_id for s in store.load_widgets_as_of(1500)] == [
        w.widget_id
    ]


def test_discard_deletes_unused_widget(
    ctx: WidgetContext, store: SQLiteStore
) -> None:
    w = Widget.create(ctx, "system_info")
    assert w.discard() is True
    assert store.load_widget_history(w.widget_id) == []


def test_discarded_id_is_never_reused(ctx: WidgetContext) -> None:
    w = Widget.create(ctx, "system_info")
    assert w.discard() is True

    successor = Widget.create(ctx, "system_info")
    assert successor.widget_id != w.widget_id


class SlowLineStore:
    """Holds every line write until the gate opens."""

    def __init__(self, store: SQLiteStore, gate: threading.Event) -> None:
        self.store = store
        self.gate = gate

    def record_line(self, *args, **kwargs) -> None:
        self.gate.wait(timeout=5)
        self.store.record_line(*args, **kwargs)


def test_discard_counts_lines_still_queued(store: SQLiteStore) -> None:
    """
    A line waiting in the persistence queue keeps the widget: it is archived
    rather than deleted, and its line never ends up under another widget.
    """
    gate = threading.Event()
    queue = PersistenceQueue(SlowLineStore(store, gate))
    ctx = WidgetContext(store=store, sink=queue)
    try:
        first = Widget.create(ctx, "raw_command", {"command": "uptime"})
        first.executor.add_output("line from first")

        opener = threading.Timer(0.3, gate.set)
        opener.start()
        assert first.discard() is False
        opener.join()

        second = Widget.create(ctx, "raw_command", {"command": "uptime"})
        queue.flush()
    finally:
        gate.set()
        queue.close()

    assert second.widget_id != first.widget_id
    assert _contents(store, first.widget_id, 0) == ["line from first"]
    assert _contents(store, second.widget_id, 0) == []


# ----------------------------------------------------------------
# Time travel
# ----------------------------------------------------------------


def test_reconstruct_workspace_at_instant(
    ctx: WidgetContext, store: SQLiteStore
) -> None:
    """
    Each frame carries the generation live at the instant and only the
    lines captured up to it.
    """
    w = Widget.create(
        ctx, "raw_command", {"command": "echo v0"}, created_at=1000
    )
    store.record_line(w.widget_id, 0, "early", 1, timestamp=1100)
    store.record_line(w.widget_id, 0, "late", 2, timestamp=1900)
    store.bump_widget_version(
        w.widget_id, 1, "raw_command", {"command": "echo v1"}, Layout(),
        created_at=2000,
    )
    store.record_line(w.widget_id, 1, "new", 1, timestamp=2100)

    (frame,) = reconstruct_workspace(store, 1500)
    assert frame.snapshot.version == 0
    assert [ln.content for ln in frame.lines] == ["early"]

    (frame,) = reconstruct_workspace(store, 2050)
    assert frame.snapshot.version == 1
    assert frame.lines == []

    assert reconstruct_workspace(store, 500) == []
