# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Subprocess-backed command executor for WatchPost.

One CommandExecutor belongs to one widget. It owns:
- a bounded display buffer (oldest lines evicted first)
- a running flag
- at most one worker thread streaming the child's stdout
- an optional persistence binding (sink, widget id, version)

The buffer and running flag are shared with the UI thread and guarded by a
short-hold lock; no I/O happens while it is held. Cancellation is
cooperative: the worker checks the flag before each spawn and after each
line, and stop() kills the child so a blocked read returns promptly.

Every failure is reported as a line in the buffer. The display buffer is
the user-facing error surface.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections import deque

from .command import CommandSpec, ExecutionMode, OneShot, Periodic
from .interfaces import LineSink
from .log import write_crash_log
from .utils import now_us

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 1000
COMPLETED_MARKER = "Command completed"


class CommandExecutor:
    """Runs one command at a time and streams its output into a buffer."""

    def __init__(
        self,
        max_lines: int = DEFAULT_MAX_LINES,
        kill_timeout: float = 2.0,
        force_color: bool = False,
    ):
        """Initialize executor with configuration.

        Args:
            max_lines: Display buffer capacity (oldest lines evicted)
            kill_timeout: Seconds to wait for a child to be reaped
            force_color: If True, set color-forcing env variables
        """
        if max_lines < 1:
            raise ValueError(f"max_lines must be positive, got {max_lines}")
        self.max_lines = max_lines
        self.kill_timeout = kill_timeout
        self.force_color = force_color

        self._lock = threading.Lock()
        self._output: deque[str] = deque(maxlen=max_lines)
        self._running = False
        self._run_id = 0
        self._proc: subprocess.Popen | None = None
        self._wake: threading.Event | None = None
        self._worker: threading.Thread | None = None

        self._sink: LineSink | None = None
        self._widget_id: int | None = None
        self._widget_version: int | None = None
        self._next_line = 1

        self._selected_host = "localhost"

    # ----------------------------------------------------------------
    # UI-facing state
    # ----------------------------------------------------------------

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def output(self) -> list[str]:
        """Copy of the display buffer, oldest first."""
        with self._lock:
            return list(self._output)

    def clear_output(self) -> None:
        with self._lock:
            self._output.clear()

    def load_historical_output(self, lines: list[str]) -> None:
        """Replace the buffer for display-only replay; nothing is persisted."""
        with self._lock:
            self._output.clear()
            self._output.extend(lines)

    @property
    def selected_host(self) -> str:
        with self._lock:
            return self._selected_host

    @selected_host.setter
    def selected_host(self, alias: str) -> None:
        with self._lock:
            self._selected_host = alias

    @property
    def binding(self) -> tuple[int, int] | None:
        """(widget_id, version) that future lines are recorded under."""
        with self._lock:
            if self._sink is None or self._widget_id is None:
                return None
            return (self._widget_id, self._widget_version or 0)

    # ----------------------------------------------------------------
    # Persistence binding
    # ----------------------------------------------------------------

    def set_database(
        self,
        sink: LineSink | None,
        widget_id: int,
        widget_version: int,
        next_line_number: int = 1,
    ) -> None:
        """Bind future lines to a generation.

        Called right after a version bump so lines captured after the
        restart never mix with the previous generation's stream.
        """
        with self._lock:
            self._sink = sink
            self._widget_id = widget_id
            self._widget_version = widget_version
            self._next_line = max(1, next_line_number)

    def add_output(self, line: str, line_number: int | None = None) -> None:
        """Append a line to the buffer and queue it for persistence."""
        with self._lock:
            pending = self._append_locked(line, line_number)
        self._submit(pending)

    def _append_locked(
        self, line: str, line_number: int | None = None
    ) -> tuple | None:
        self._output.append(line)
        if self._sink is None or self._widget_id is None:
            return None
        if line_number is None:
            line_number = self._next_line
        self._next_line = max(self._next_line, line_number + 1)
        return (
            self._sink,
            self._widget_id,
            self._widget_version or 0,
            line,
            line_number,
            now_us(),
        )

    def _submit(self, pending: tuple | None) -> None:
        if pending is None:
            return
        sink, widget_id, version, line, line_number, ts = pending
        try:
            sink.submit(widget_id, version, line, line_number, ts)
        except Exception as e:
            logger.warning(
                "could not queue line %d of widget %d v%d: %s",
                line_number, widget_id, version, e,
            )

    def _emit(self, run_id: int, line: str) -> None:
        """add_output() for a worker.

        Lines from a stopped or stale run are dropped under the lock, so a
        line read before stop() can never land under a rebound generation.
        """
        with self._lock:
            if not self._running or self._run_id != run_id:
                return
            pending = self._append_locked(line)
        self._submit(pending)

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    def start(self, spec: CommandSpec, mode: ExecutionMode) -> bool:
        """Start streaming ``spec`` in the given mode.

        Returns:
            False (and does nothing) if already running
        """
        with self._lock:
            if self._running:
                return False
            previous = self._worker

        # A stopped worker may still be reaping its child
        if previous is not None and previous.is_alive():
            previous.join(timeout=self.kill_timeout + 1.0)

        with self._lock:
            if self._running:
                return False
            self._running = True
            self._run_id += 1
            run_id = self._run_id
            wake = threading.Event()
            self._wake = wake
            worker = threading.Thread(
                target=self._run,
                args=(run_id, spec, mode, wake),
                name=f"watchpost-exec-{self._widget_id}-{run_id}",
                daemon=True,
            )
            self._worker = worker

        logger.debug("starting %s (%s)", spec, type(mode).__name__)
        worker.start()
        return True

    def stop(self) -> None:
        """Request the worker to stop and kill any in-flight child."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            proc = self._proc
            wake = self._wake

        if wake is not None:
            wake.set()
        if proc is not None:
            self._kill(proc)

    def wait(self, timeout: float | None = None) -> bool:
        """Join the current worker.

        Returns:
            True if no worker is alive afterwards
        """
        with self._lock:
            worker = self._worker
        if worker is None:
            return True
        worker.join(timeout=timeout)
        return not worker.is_alive()

    # ----------------------------------------------------------------
    # Worker
    # ----------------------------------------------------------------

    def _is_current(self, run_id: int) -> bool:
        with self._lock:
            return self._running and self._run_id == run_id

    def _run(
        self,
        run_id: int,
        spec: CommandSpec,
        mode: ExecutionMode,
        wake: threading.Event,
    ) -> None:
        try:
            if isinstance(mode, Periodic):
                while self._is_current(run_id):
                    with self._lock:
                        if self._running and self._run_id == run_id:
                            self._output.clear()
                    if not self._execute(run_id, spec, marker=False):
                        break
                    if wake.wait(mode.interval):
                        break
            else:
                self._execute(run_id, spec, marker=isinstance(mode, OneShot))
        except Exception as e:
            logger.exception("executor worker crashed running %s", spec)
            write_crash_log(
                e,
                widget_id=self._widget_id,
                widget_version=self._widget_version,
                command=spec.flatten(),
            )
            self._emit(run_id, f"Executor error: {e}")
        finally:
            with self._lock:
                if self._run_id == run_id:
                    self._running = False
                    self._proc = None

    def _execute(self, run_id: int, spec: CommandSpec, marker: bool) -> bool:
        """Run the command once, streaming stdout.

        Returns:
            True if the process ran to end-of-output without errors
        """
        # Re-check right before spawning: a stop during a periodic sleep
        # must prevent one more run
        if not self._is_current(run_id):
            return False

        try:
            proc = subprocess.Popen(
                spec.argv(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                env=self._build_env(),
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self._emit(run_id, f"Failed to execute command: {e}")
            return False

        with self._lock:
            current = self._running and self._run_id == run_id
            if current:
                self._proc = proc
        if not current:
            self._kill(proc)
            self._reap(proc)
            return False

        assert proc.stdout is not None

        reached_eof = False
        read_error = False
        try:
            for raw in iter(proc.stdout.readline, ""):
                if not self._is_current(run_id):
                    break
                self._emit(run_id, raw.rstrip("\r\n"))
            else:
                reached_eof = True
        except (OSError, ValueError) as e:
            read_error = True
            if self._is_current(run_id):
                self._emit(run_id, f"Error reading output: {e}")
        finally:
            if not reached_eof:
                self._kill(proc)
            exit_code = self._reap(proc)
            proc.stdout.close()
            with self._lock:
                if self._proc is proc:
                    self._proc = None

        if reached_eof and marker and self._is_current(run_id):
            if exit_code == 0:
                self._emit(run_id, COMPLETED_MARKER)
            else:
                self._emit(
                    run_id, f"{COMPLETED_MARKER} (exit status {exit_code})"
                )

        return reached_eof and not read_error

    def _build_env(self) -> dict:
        env = os.environ.copy()
        # Children writing through stdio buffers would otherwise stall lines
        env["PYTHONUNBUFFERED"] = "1"
        if self.force_color:
            env["PY_COLORS"] = "1"
            env["FORCE_COLOR"] = "1"
            env["CLICOLOR_FORCE"] = "1"
        return env

    def _kill(self, proc: subprocess.Popen) -> None:
        """Kill the child's whole process group (pipelines, sh -c)."""
        if proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (OSError, AttributeError):
            try:
                proc.kill()
            except OSError:
                # Already exited
                pass

    def _reap(self, proc: subprocess.Popen) -> int:
        try:
            return proc.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            self._kill(proc)
            return proc.wait()
