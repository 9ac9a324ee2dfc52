"""Shared package version helpers."""

from __future__ import annotations

from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION_NAME = "kiln-orchestrator"


@lru_cache(maxsize=1)
def get_kiln_version() -> str | None:
    """Return the installed distribution version, or None without package metadata."""
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return None


__all__ = ["DISTRIBUTION_NAME", "get_kiln_version"]
