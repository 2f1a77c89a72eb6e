"""Shared helpers for file I/O, subprocesses and logging."""
