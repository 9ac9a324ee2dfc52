"""Async repositories for job persistence."""

from __future__ import annotations

from kiln.core.adapters.db.repositories.base import ClosingAwareSessionFactory, RepositoryClosing
from kiln.core.adapters.db.repositories.jobs import JobRepository

__all__ = [
    "ClosingAwareSessionFactory",
    "JobRepository",
    "RepositoryClosing",
]
