"""Adapters to the outside world: subprocesses, the container runtime, HTTP, SQLite."""
