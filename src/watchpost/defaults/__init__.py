"""Packaged YAML defaults for WatchPost."""
