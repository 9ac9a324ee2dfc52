"""Job store and post-completion collaborators shared by every runner."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from kiln.core import limits
from kiln.core.models.enums import JobStatus, RunnerType
from kiln.core.time import utc_now

if TYPE_CHECKING:
    from kiln.core.adapters.db.schema import Job, Notification

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    async def insert_job(self, job: Job) -> Job: ...

    async def get_job(self, job_id: str) -> Job | None: ...

    async def update_job(self, job_id: str, **fields: Any) -> Job | None: ...


class Notifier(Protocol):
    async def create_notification(
        self, text: str, meta: dict[str, Any] | None = None
    ) -> Notification | None: ...


class MemoryExtractor(Protocol):
    async def extract_memories_from_job(self, job_id: str) -> None: ...


class NoopMemoryExtractor:
    """Default extractor for deployments without a memory subsystem."""

    async def extract_memories_from_job(self, job_id: str) -> None:
        logger.debug("Memory extraction disabled; skipping job %s", job_id)


def short_job_id(job_id: str) -> str:
    return job_id[: limits.JOB_ID_SHORT_LENGTH]


class JobFinalizer:
    """Writes job state transitions and runs best-effort completion side effects.

    Store failures are logged and never raised: a runner must always finish its
    own bookkeeping even when persistence is unhealthy.
    """

    def __init__(
        self,
        store: JobStore,
        notifier: Notifier,
        memory: MemoryExtractor | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._memory = memory or NoopMemoryExtractor()

    @property
    def store(self) -> JobStore:
        return self._store

    async def mark_running(self, job_id: str, *, runner_type: RunnerType | None = None) -> None:
        fields: dict[str, Any] = {"status": JobStatus.RUNNING}
        if runner_type is not None:
            fields["runner_type"] = runner_type
        await self._update(job_id, **fields)

    async def set_runner_type(self, job_id: str, runner_type: RunnerType) -> None:
        await self._update(job_id, runner_type=runner_type)

    async def mark_completed(self, job_id: str, *, tier: str) -> None:
        await self._update(job_id, status=JobStatus.COMPLETED, completed_at=utc_now())
        await self._extract_memories(job_id)
        await self._notify(f"Job {short_job_id(job_id)} completed ({tier})", job_id)

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        *,
        tier: str,
        reason: str | None = None,
        notify: bool = True,
    ) -> None:
        await self._update(job_id, status=JobStatus.FAILED, completed_at=utc_now(), error=error)
        if not notify:
            return
        suffix = f": {reason}" if reason else ""
        await self._notify(f"Job {short_job_id(job_id)} failed ({tier}){suffix}", job_id)

    async def mark_cancelled(self, job_id: str) -> None:
        await self._update(job_id, status=JobStatus.CANCELLED, completed_at=utc_now())

    async def _update(self, job_id: str, **fields: Any) -> None:
        try:
            await self._store.update_job(job_id, **fields)
        except Exception as exc:  # quality-allow-broad-except
            logger.error("Failed to update job %s: %s", job_id, exc)

    async def _extract_memories(self, job_id: str) -> None:
        try:
            await self._memory.extract_memories_from_job(job_id)
        except Exception as exc:  # quality-allow-broad-except
            logger.error("Memory extraction failed for %s: %s", job_id, exc)

    async def _notify(self, text: str, job_id: str) -> None:
        try:
            await self._notifier.create_notification(text, {"jobId": job_id})
        except Exception as exc:  # quality-allow-broad-except
            logger.error("Notification failed for %s: %s", job_id, exc)


__all__ = [
    "JobFinalizer",
    "JobStore",
    "MemoryExtractor",
    "NoopMemoryExtractor",
    "Notifier",
    "short_job_id",
]
