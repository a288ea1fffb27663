# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Widget kinds.

Each kind is a WidgetKind table: a type tag, default config, and two
functions deriving the command and execution mode from a config dict.
The set is closed: WIDGET_KINDS is the whole registry and the type tag is
what gets persisted.

Config keys shared by every kind:
- host: SSH alias to run on ("localhost" by default)
- filter: display-only substring filter
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .command import CommandSpec, Continuous, ExecutionMode, OneShot, Periodic

COMMON_DEFAULTS: dict[str, Any] = {"host": "localhost", "filter": ""}


@dataclass(frozen=True)
class WidgetKind:
    type_tag: str
    title: str
    build_command: Callable[[dict[str, Any]], CommandSpec]
    execution_mode: Callable[[dict[str, Any]], ExecutionMode]
    defaults: dict[str, Any] = field(default_factory=dict)

    def default_config(
        self, overrides: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Defaults for this kind, optionally overlaid with system.yaml values."""
        cfg = {**COMMON_DEFAULTS, **self.defaults}
        if overrides:
            cfg.update(overrides)
        return cfg


# ----------------------------------------------------------------
# raw_command
# ----------------------------------------------------------------


def _raw_command(cfg: dict[str, Any]) -> CommandSpec:
    return CommandSpec("sh").arg("-c").arg(cfg.get("command", ""))


def _raw_mode(cfg: dict[str, Any]) -> ExecutionMode:
    mode = str(cfg.get("mode", "oneshot")).lower()
    if mode == "oneshot":
        return OneShot()
    if mode == "continuous":
        return Continuous()
    if mode == "periodic":
        return Periodic(float(cfg.get("interval", 5)))
    raise ValueError(f"Unknown execution mode: {mode!r}")


# ----------------------------------------------------------------
# cpu_monitor
# ----------------------------------------------------------------


def _cpu_command(cfg: dict[str, Any]) -> CommandSpec:
    return CommandSpec("vmstat").arg(int(cfg.get("interval_seconds", 2)))


# ----------------------------------------------------------------
# system_info
# ----------------------------------------------------------------

SYSTEM_INFO_COMMANDS = {
    "overview": "uname -a",
    "hardware": "lscpu",
    "activity": "top -b -n 1 | head -n 20",
}


def _system_info_command(cfg: dict[str, Any]) -> CommandSpec:
    info_type = cfg.get("info_type", "overview")
    command = SYSTEM_INFO_COMMANDS.get(info_type, SYSTEM_INFO_COMMANDS["overview"])
    return CommandSpec("sh").arg("-c").arg(command)


# ----------------------------------------------------------------
# process_monitor / network_monitor
# ----------------------------------------------------------------


def _shell(default: str) -> Callable[[dict[str, Any]], CommandSpec]:
    def build(cfg: dict[str, Any]) -> CommandSpec:
        return CommandSpec("sh").arg("-c").arg(cfg.get("command") or default)

    return build


def _refresh_every(cfg: dict[str, Any]) -> ExecutionMode:
    return Periodic(int(cfg.get("refresh_interval_ms", 1000)) / 1000.0)


WIDGET_KINDS: dict[str, WidgetKind] = {
    kind.type_tag: kind
    for kind in (
        WidgetKind(
            type_tag="raw_command",
            title="Raw Command",
            build_command=_raw_command,
            execution_mode=_raw_mode,
            defaults={"command": "", "mode": "oneshot", "interval": 5},
        ),
        WidgetKind(
            type_tag="cpu_monitor",
            title="CPU Monitor",
            build_command=_cpu_command,
            execution_mode=lambda cfg: Continuous(),
            defaults={"interval_seconds": 2},
        ),
        WidgetKind(
            type_tag="system_info",
            title="System Info",
            build_command=_system_info_command,
            execution_mode=lambda cfg: OneShot(),
            defaults={"info_type": "overview"},
        ),
        WidgetKind(
            type_tag="process_monitor",
            title="Process Monitor",
            build_command=_shell("ps aux"),
            execution_mode=_refresh_every,
            defaults={"command": "ps aux", "refresh_interval_ms": 1000},
        ),
        WidgetKind(
            type_tag="network_monitor",
            title="Network Monitor",
            build_command=_shell("netstat -an"),
            execution_mode=_refresh_every,
            defaults={"command": "netstat -an", "refresh_interval_ms": 2000},
        ),
    )
}


def get_kind(type_tag: str) -> WidgetKind:
    try:
        return WIDGET_KINDS[type_tag]
    except KeyError:
        raise ValueError(f"Unknown widget type: {type_tag!r}") from None
