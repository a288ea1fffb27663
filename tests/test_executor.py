"""
Tests for watchpost.executor: running commands, buffering output and stopping cleanly.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from collections.abc import Callable

import pytest

from watchpost.command import CommandSpec, Continuous, OneShot, Periodic
from watchpost.executor import COMPLETED_MARKER, CommandExecutor


def _py(code: str) -> CommandSpec:
    return CommandSpec(sys.executable, ("-c", code))


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class RecordingSink:
    def __init__(self) -> None:
        self.submitted: list[tuple[int, int, str, int]] = []

    def submit(self, widget_id, widget_version, content, line_number, timestamp):
        self.submitted.append((widget_id, widget_version, content, line_number))
        return True


class BrokenSink:
    def submit(self, widget_id, widget_version, content, line_number, timestamp):
        raise RuntimeError("disk on fire")


class ExplodingPipe:
    """Stands in for a child's stdout whose reads fail."""

    def __init__(self, real) -> None:
        self._real = real

    def readline(self):
        raise OSError("pipe broke")

    def close(self) -> None:
        self._real.close()


@pytest.fixture
def executor():
    ex = CommandExecutor(max_lines=100, kill_timeout=2.0)
    yield ex
    ex.stop()
    ex.wait(timeout=5)


@pytest.fixture
def spawn_count(monkeypatch: pytest.MonkeyPatch) -> list:
    """Counts child processes started through subprocess.Popen."""
    real_popen = subprocess.Popen
    spawned: list = []

    def counting_popen(*args, **kwargs):
        spawned.append(args[0])
        return real_popen(*args, **kwargs)

    monkeypatch.setattr(subprocess, "Popen", counting_popen)
    return spawned


# ----------------------------------------------------------------
# One-shot runs
# ----------------------------------------------------------------


def test_oneshot_streams_lines_then_marker(executor: CommandExecutor) -> None:
    assert executor.start(_py("print('alpha'); print('beta')"), OneShot())
    assert executor.wait(timeout=10)

    assert executor.output() == ["alpha", "beta", COMPLETED_MARKER]
    assert not executor.is_running()


def test_oneshot_reports_non_zero_exit(executor: CommandExecutor) -> None:
    executor.start(_py("import sys; print('partial'); sys.exit(3)"), OneShot())
    assert executor.wait(timeout=10)

    assert executor.output() == [
        "partial", f"{COMPLETED_MARKER} (exit status 3)",
    ]


def test_stderr_is_merged_into_buffer(executor: CommandExecutor) -> None:
    executor.start(
        _py("import sys; sys.stderr.write('oops\\n')"), OneShot()
    )
    assert executor.wait(timeout=10)
    assert "oops" in executor.output()


def test_spawn_failure_becomes_a_line(executor: CommandExecutor) -> None:
    """
    A command that cannot start is reported in the buffer, and the
    executor returns to idle.
    """
    assert executor.start(
        CommandSpec("/nonexistent/watchpost-no-such-binary"), OneShot()
    )
    assert executor.wait(timeout=10)

    output = executor.output()
    assert len(output) == 1
    assert output[0].startswith("Failed to execute command:")
    assert not executor.is_running()


def test_executor_can_restart_after_completion(
    executor: CommandExecutor,
) -> None:
    executor.start(_py("print('one')"), OneShot())
    assert executor.wait(timeout=10)
    assert executor.start(_py("print('two')"), OneShot())
    assert executor.wait(timeout=10)

    assert executor.output() == [
        "one", COMPLETED_MARKER, "two", COMPLETED_MARKER,
    ]


# ----------------------------------------------------------------
# Single-flight and stop
# ----------------------------------------------------------------


def test_second_start_while_running_is_ignored(
    executor: CommandExecutor, spawn_count: list
) -> None:
    """
    Only one worker per executor: a start while running returns False and
    spawns nothing.
    """
    spec = _py("import time; print('tick', flush=True); time.sleep(30)")

    assert executor.start(spec, Continuous()) is True
    assert executor.start(spec, Continuous()) is False
    assert _wait_for(lambda: "tick" in executor.output())

    executor.stop()
    assert executor.wait(timeout=10)

    assert len(spawn_count) == 1
    assert executor.output() == ["tick"]


def test_stop_kills_long_running_child_promptly(
    executor: CommandExecutor,
) -> None:
    """
    Continuous streams never end on their own; stop() must not wait them out.
    """
    spec = _py("import time; print('up', flush=True); time.sleep(60)")
    executor.start(spec, Continuous())
    assert _wait_for(lambda: executor.output() == ["up"])

    t0 = time.monotonic()
    executor.stop()
    assert executor.wait(timeout=10)

    assert time.monotonic() - t0 < 5
    assert not executor.is_running()
    # No completion marker for a stopped stream
    assert COMPLETED_MARKER not in executor.output()


def test_stop_when_idle_is_a_no_op(executor: CommandExecutor) -> None:
    executor.stop()
    assert not executor.is_running()
    assert executor.wait(timeout=1)


def test_periodic_stop_during_sleep_prevents_next_run(
    executor: CommandExecutor, spawn_count: list
) -> None:
    """
    A stop during the inter-run sleep wakes the worker, and no further
    child is spawned.
    """
    spec = _py("print('l1'); print('l2'); print('l3')")
    executor.start(spec, Periodic(1.0))

    assert _wait_for(lambda: executor.output() == ["l1", "l2", "l3"])
    time.sleep(0.3)
    executor.stop()
    assert executor.wait(timeout=5)

    time.sleep(1.2)
    assert len(spawn_count) == 1
    assert executor.output() == ["l1", "l2", "l3"]
    assert not executor.is_running()


def test_periodic_reruns_and_clears_buffer(
    executor: CommandExecutor, spawn_count: list
) -> None:
    """
    Each periodic run replaces the previous snapshot instead of appending.
    """
    executor.start(_py("print('snapshot')"), Periodic(0.1))

    assert _wait_for(lambda: len(spawn_count) >= 3, timeout=10)
    executor.stop()
    assert executor.wait(timeout=5)

    assert executor.output().count("snapshot") <= 1
    assert COMPLETED_MARKER not in executor.output()


# ----------------------------------------------------------------
# Buffer
# ----------------------------------------------------------------


def test_buffer_evicts_oldest_lines() -> None:
    ex = CommandExecutor(max_lines=5)
    for i in range(8):
        ex.add_output(f"line {i}")

    assert ex.output() == [f"line {i}" for i in range(3, 8)]


def test_max_lines_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CommandExecutor(max_lines=0)


def test_historical_output_is_display_only() -> None:
    """
    Replayed lines fill the buffer (bounded) but are never persisted again.
    """
    ex = CommandExecutor(max_lines=3)
    sink = RecordingSink()
    ex.set_database(sink, 1, 0)

    ex.load_historical_output([f"old {i}" for i in range(5)])

    assert ex.output() == ["old 2", "old 3", "old 4"]
    assert sink.submitted == []


def test_output_returns_a_copy() -> None:
    ex = CommandExecutor()
    ex.add_output("a")
    snapshot = ex.output()
    snapshot.append("b")
    assert ex.output() == ["a"]


# ----------------------------------------------------------------
# Persistence binding
# ----------------------------------------------------------------


def test_lines_are_numbered_per_binding() -> None:
    """
    Line numbers count up per generation and restart on rebinding.
    """
    ex = CommandExecutor()
    sink = RecordingSink()

    ex.add_output("unbound")
    ex.set_database(sink, 5, 2)
    ex.add_output("a")
    ex.add_output("b")
    ex.set_database(sink, 5, 3)
    ex.add_output("c")

    assert ex.binding == (5, 3)
    assert sink.submitted == [
        (5, 2, "a", 1),
        (5, 2, "b", 2),
        (5, 3, "c", 1),
    ]


def test_binding_can_continue_numbering() -> None:
    ex = CommandExecutor()
    sink = RecordingSink()
    ex.set_database(sink, 1, 0, next_line_number=41)

    ex.add_output("next")
    ex.add_output("explicit", line_number=50)
    ex.add_output("after")

    assert [s[3] for s in sink.submitted] == [41, 50, 51]


def test_streamed_lines_reach_the_sink(executor: CommandExecutor) -> None:
    sink = RecordingSink()
    executor.set_database(sink, 9, 1)

    executor.start(_py("print('x'); print('y')"), OneShot())
    assert executor.wait(timeout=10)

    assert sink.submitted == [
        (9, 1, "x", 1),
        (9, 1, "y", 2),
        (9, 1, COMPLETED_MARKER, 3),
    ]


def test_sink_failure_keeps_line_in_buffer(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """
    A persistence failure is logged; the display buffer is unaffected.
    """
    ex = CommandExecutor()
    ex.set_database(BrokenSink(), 1, 0)

    with caplog.at_level(logging.WARNING, logger="watchpost.executor"):
        ex.add_output("still visible")

    assert ex.output() == ["still visible"]
    assert "disk on fire" in caplog.text


def test_line_read_before_stop_is_not_filed_under_new_binding(
    executor: CommandExecutor, monkeypatch: pytest.MonkeyPatch
) -> None:
    """
    A line the worker read just before stop() must not be recorded under the
    generation bound right after it.
    """
    sink = RecordingSink()
    executor.set_database(sink, 1, 0)

    entered = threading.Event()
    release = threading.Event()
    real_emit = executor._emit

    def delayed_emit(run_id, line):
        entered.set()
        release.wait(timeout=5)
        real_emit(run_id, line)

    monkeypatch.setattr(executor, "_emit", delayed_emit)

    executor.start(
        _py("import time; print('old', flush=True); time.sleep(30)"),
        Continuous(),
    )
    assert entered.wait(timeout=10)

    executor.stop()
    executor.set_database(sink, 1, 1)
    release.set()
    assert executor.wait(timeout=10)

    assert sink.submitted == []
    assert "old" not in executor.output()


# ----------------------------------------------------------------
# Failures
# ----------------------------------------------------------------


def test_read_error_becomes_a_line_and_ends_stream(
    executor: CommandExecutor, monkeypatch: pytest.MonkeyPatch
) -> None:
    """
    A failing read is reported once, the child is killed and the executor
    goes idle without a completion marker.
    """
    real_popen = subprocess.Popen

    def broken_stdout_popen(*args, **kwargs):
        proc = real_popen(*args, **kwargs)
        proc.stdout = ExplodingPipe(proc.stdout)
        return proc

    monkeypatch.setattr(subprocess, "Popen", broken_stdout_popen)

    executor.start(_py("import time; time.sleep(30)"), OneShot())
    assert executor.wait(timeout=10)

    assert executor.output() == ["Error reading output: pipe broke"]
    assert not executor.is_running()


def test_periodic_spawn_failure_ends_loop(
    executor: CommandExecutor, spawn_count: list
) -> None:
    """
    A periodic command that cannot start is not retried every interval.
    """
    executor.start(
        CommandSpec("/nonexistent/watchpost-no-such-binary"), Periodic(0.05)
    )
    assert executor.wait(timeout=10)
    time.sleep(0.2)

    assert len(spawn_count) == 1
    output = executor.output()
    assert len(output) == 1
    assert output[0].startswith("Failed to execute command:")
    assert not executor.is_running()


def test_unexpected_worker_error_is_reported(
    executor: CommandExecutor,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """
    Anything unexpected in the worker is logged, written to crash.log and
    shown as a line; the executor returns to idle.
    """
    monkeypatch.setenv("WATCHPOST_DATA_HOME", str(tmp_path))

    def exploding_popen(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(subprocess, "Popen", exploding_popen)

    with caplog.at_level(logging.ERROR, logger="watchpost.executor"):
        executor.start(_py("print('never')"), OneShot())
        assert executor.wait(timeout=10)

    assert executor.output() == ["Executor error: kaboom"]
    assert not executor.is_running()
    assert "executor worker crashed" in caplog.text

    crash = (tmp_path / "watchpost" / "logs" / "crash.log").read_text(
        encoding="utf-8"
    )
    assert "kaboom" in crash
