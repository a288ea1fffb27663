# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Host registry: named execution targets resolved by SSH alias.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .interfaces import HostStore  # pragma: no cover

LOCAL_ALIASES = frozenset({"", "localhost", "127.0.0.1", "::1"})


def is_local_alias(alias: str) -> bool:
    return alias.strip().lower() in LOCAL_ALIASES


@dataclass(frozen=True)
class Host:
    name: str
    alias: str
    description: str = ""
    id: int | None = None

    @property
    def is_local(self) -> bool:
        return is_local_alias(self.alias)


LOCALHOST = Host(
    name="localhost", alias="localhost", description="Local machine"
)


class HostRegistry:
    """Append-only set of known hosts.

    Hosts are never removed or edited once added: captured lines may
    reference them. When a store is attached, new hosts are persisted.
    """

    def __init__(self, store: HostStore | None = None):
        self._store = store
        self._lock = threading.Lock()
        self._hosts: dict[str, Host] = {}

    def load(self) -> None:
        """(Re)read hosts from the attached store."""
        if self._store is None:
            return
        hosts = self._store.list_hosts()
        with self._lock:
            for host in hosts:
                self._hosts.setdefault(host.alias, host)

    def add(self, name: str, alias: str, description: str = "") -> Host:
        """Register a host; an already-known alias returns the existing one."""
        alias = alias.strip()
        if is_local_alias(alias):
            return LOCALHOST

        with self._lock:
            existing = self._hosts.get(alias)
        if existing is not None:
            return existing

        if self._store is not None:
            host = self._store.add_host(name, alias, description)
        else:
            host = Host(name=name, alias=alias, description=description)

        with self._lock:
            return self._hosts.setdefault(alias, host)

    def resolve(self, alias: str) -> Host:
        """Map an alias to a Host.

        Unknown aliases resolve to an ad-hoc host so that names defined
        only in ~/.ssh/config still work.
        """
        alias = alias.strip()
        if is_local_alias(alias):
            return LOCALHOST
        with self._lock:
            host = self._hosts.get(alias)
        return host if host is not None else Host(name=alias, alias=alias)

    def hosts(self) -> list[Host]:
        """All known hosts, localhost first."""
        with self._lock:
            known = sorted(self._hosts.values(), key=lambda h: h.name)
        return [LOCALHOST, *known]
