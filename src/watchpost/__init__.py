# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
WatchPost core package.

Captures the output of monitoring commands, local or over SSH, and records
every line under the widget generation that produced it, so any past state
of a workspace can be rebuilt.
"""
from .controller import Widget as Widget  # noqa: F401 (re-export)
from .init import (  # noqa: F401 (re-export)
    create_investigation as create_investigation,
    open_investigation as open_investigation,
)
