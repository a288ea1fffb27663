# WatchPost™ — Versioned Command Capture & Time-Travel Workspace Core
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Utility functions for WatchPost.
"""

import time


def now_us() -> int:
    """Current wall-clock time in microseconds since the epoch."""
    return time.time_ns() // 1_000


def matches_filter(line: str, pattern: str) -> bool:
    """Case-insensitive substring filter; an empty pattern matches everything."""
    if not pattern:
        return True
    return pattern.lower() in line.lower()


def format_timestamp(timestamp_us: int, now: int | None = None) -> str:
    """Render a microsecond timestamp as a coarse relative age.

    Args:
        timestamp_us: Timestamp in microseconds since the epoch
        now: Reference time in microseconds (default: now)

    Returns:
        "Just now", "N minutes ago", "N hours ago" or "N days ago"
    """
    if now is None:
        now = now_us()

    elapsed_secs = max(0, now - timestamp_us) // 1_000_000

    days = elapsed_secs // 86400
    hours = (elapsed_secs % 86400) // 3600
    mins = (elapsed_secs % 3600) // 60

    if days > 0:
        return f"{days} days ago"
    if hours > 0:
        return f"{hours} hours ago"
    if mins > 0:
        return f"{mins} minutes ago"
    return "Just now"
