# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Command specs, execution modes and remote wrapping.

A CommandSpec is transient: widgets build one from their config every time
they start, and the executor only ever sees the final (possibly wrapped)
program + argv.
"""

from __future__ import annotations

import shlex
from collections.abc import Sequence
from dataclasses import dataclass, field

from .hosts import Host


@dataclass(frozen=True)
class CommandSpec:
    program: str
    args: tuple[str, ...] = field(default_factory=tuple)

    def arg(self, value: object) -> CommandSpec:
        """Return a copy with one more argument appended."""
        return CommandSpec(self.program, (*self.args, str(value)))

    def with_args(self, values: Sequence[object]) -> CommandSpec:
        """Return a copy with the argument list replaced."""
        return CommandSpec(self.program, tuple(str(v) for v in values))

    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def flatten(self) -> str:
        """Single shell-quoted command string for remote execution."""
        return shlex.join(self.argv())

    def __str__(self) -> str:
        return self.flatten()


# ----------------------------------------------------------------
# Execution modes
# ----------------------------------------------------------------


@dataclass(frozen=True)
class OneShot:
    """Run to completion, then emit a completion marker."""


@dataclass(frozen=True)
class Continuous:
    """Long-lived stream (vmstat 2, tail -f); runs until stopped."""


@dataclass(frozen=True)
class Periodic:
    """Run to completion, sleep ``interval`` seconds, repeat."""

    interval: float

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError(
                f"Periodic interval must be positive, got {self.interval}"
            )


ExecutionMode = OneShot | Continuous | Periodic


# ----------------------------------------------------------------
# Remote wrapping
# ----------------------------------------------------------------


def build_invocation(
    spec: CommandSpec,
    host: Host,
    ssh_program: str = "ssh",
    ssh_options: Sequence[str] = (),
) -> CommandSpec:
    """Rewrite a spec so it runs on ``host``.

    Local hosts are returned unchanged. Remote hosts get:
        ssh [options] <alias> '<program> <args...>'
    where the command string is POSIX shell-quoted so the remote shell
    rebuilds the same argv.
    """
    if host.is_local:
        return spec

    return CommandSpec(
        ssh_program,
        (*ssh_options, host.alias, spec.flatten()),
    )
