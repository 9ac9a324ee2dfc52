"""Exception taxonomy for the execution tiers."""

from __future__ import annotations


class KilnError(Exception):
    """Base class for orchestrator errors."""


class ContainerRuntimeError(KilnError):
    """The container runtime rejected or failed a command."""

    def __init__(self, message: str, *, command: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.command = command


class WorkerUnreachableError(KilnError):
    """A worker did not answer over the control plane (refused, timed out, garbage)."""

    def __init__(self, message: str, *, host: str, port: int, path: str) -> None:
        super().__init__(message)
        self.host = host
        self.port = port
        self.path = path

    def __str__(self) -> str:
        return f"{self.args[0]} ({self.host}:{self.port}{self.path})"


class NoAvailableWorkerError(KilnError):
    """``assign_job`` was called while no warm worker was ready."""


class JobSpawnError(KilnError):
    """A cold job container could not be started at all."""

    def __init__(self, job_id: str, detail: str) -> None:
        super().__init__(f"Failed to start container for job {job_id}: {detail}")
        self.job_id = job_id
        self.detail = detail


class WorkspaceStartError(KilnError):
    """The workspace container failed to spawn or never became healthy."""


__all__ = [
    "ContainerRuntimeError",
    "JobSpawnError",
    "KilnError",
    "NoAvailableWorkerError",
    "WorkerUnreachableError",
    "WorkspaceStartError",
]
