"""Kiln: warm-pool execution orchestrator for autonomous coding agent jobs."""

__version__ = "0.1.0"
