# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Background persistence for captured lines.

Executors submit lines here and return immediately. One or more daemon
writer threads drain the queue into the store. A full queue drops the
newest write; a failed write is logged. Neither ever reaches the capture
loop.

With more than one writer, lines of one generation may land out of
submission order; readers order by line_number.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass

from .interfaces import LineStore

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 10_000


@dataclass(frozen=True)
class LineWrite:
    widget_id: int
    widget_version: int
    content: str
    line_number: int
    timestamp: int


@dataclass
class PersistenceStats:
    written: int = 0
    failed: int = 0
    dropped: int = 0


_STOP = object()


class PersistenceQueue:
    """Bounded work queue drained by background writer threads."""

    def __init__(
        self,
        store: LineStore,
        maxsize: int = DEFAULT_QUEUE_SIZE,
        workers: int = 1,
    ):
        """Start the writer threads.

        Args:
            store: Destination for captured lines
            maxsize: Queue capacity; submissions beyond it are dropped
            workers: Number of writer threads
        """
        self.store = store
        self.stats = PersistenceStats()
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, int(maxsize)))
        self._stats_lock = threading.Lock()
        self._closed = False
        self._threads = [
            threading.Thread(
                target=self._writer_loop,
                name=f"watchpost-writer-{i}",
                daemon=True,
            )
            for i in range(max(1, int(workers)))
        ]
        for t in self._threads:
            t.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(
        self,
        widget_id: int,
        widget_version: int,
        content: str,
        line_number: int,
        timestamp: int,
    ) -> bool:
        """Queue one line without blocking.

        Returns:
            False if the queue is full or closed and the line was dropped
        """
        if self._closed:
            self._count("dropped")
            return False
        try:
            self._queue.put_nowait(
                LineWrite(
                    widget_id, widget_version, content, line_number, timestamp
                )
            )
            return True
        except queue.Full:
            self._count("dropped")
            logger.warning(
                "persistence queue full; dropped line %d of widget %d v%d",
                line_number, widget_id, widget_version,
            )
            return False

    def pending(self) -> int:
        return self._queue.qsize()

    def flush(self) -> None:
        """Block until every line submitted so far has been handled."""
        self._queue.join()

    def close(self, timeout: float | None = 5.0) -> None:
        """Drain outstanding writes, then stop the writer threads.

        Gives up after ``timeout`` seconds per step if the store is stuck;
        whatever is still queued at that point is lost.
        """
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            try:
                self._queue.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.warning(
                    "persistence queue still full after %ss; "
                    "%d line(s) not drained",
                    timeout, self._queue.qsize(),
                )
                break
        for t in self._threads:
            t.join(timeout=timeout)
            if t.is_alive():
                logger.warning("writer thread %s did not stop", t.name)

    def _count(self, field_name: str) -> None:
        with self._stats_lock:
            setattr(
                self.stats, field_name, getattr(self.stats, field_name) + 1
            )

    def _writer_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def _write(self, item: LineWrite) -> None:
        try:
            self.store.record_line(
                item.widget_id,
                item.widget_version,
                item.content,
                item.line_number,
                item.timestamp,
            )
        except Exception as e:
            self._count("failed")
            logger.warning(
                "failed to record line %d of widget %d v%d: %s",
                item.line_number, item.widget_id, item.widget_version, e,
            )
        else:
            self._count("written")
