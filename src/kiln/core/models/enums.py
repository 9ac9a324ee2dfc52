"""Core domain enums."""

from __future__ import annotations

from enum import StrEnum


class ExecutionMode(StrEnum):
    """Configured execution tier selector."""

    GITHUB = "github"
    LOCAL = "local"
    AUTO = "auto"


class RunnerType(StrEnum):
    """Tier that actually executed (or is executing) a job."""

    GITHUB = "github"
    LOCAL = "local"
    WARM = "warm"


class JobStatus(StrEnum):
    """Persisted job lifecycle states."""

    CREATED = "created"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PENDING_JOB_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.CREATED, JobStatus.QUEUED, JobStatus.RUNNING}
)
TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class WorkerStatus(StrEnum):
    """Warm pool slot states. Exactly one holds at a time."""

    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    DEAD = "dead"
    RECYCLING = "recycling"


class WorkspaceStatus(StrEnum):
    """Interactive workspace container states."""

    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    DEAD = "dead"
