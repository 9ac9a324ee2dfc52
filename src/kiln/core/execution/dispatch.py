"""Mode-agnostic job entry point: persist, pick a tier, run in the background."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from uuid import uuid4

from kiln.core.adapters.db.schema import Job
from kiln.core.errors import JobSpawnError, NoAvailableWorkerError
from kiln.core.models.enums import ExecutionMode, JobStatus, RunnerType
from kiln.utils.background_tasks import BackgroundTasks

if TYPE_CHECKING:
    from kiln.core.execution.hooks import JobFinalizer, JobStore
    from kiln.core.execution.local_runner import LocalRunner
    from kiln.core.execution.router import ExecutionRouter
    from kiln.core.execution.warm_pool import WarmPool

logger = logging.getLogger(__name__)


def new_branch_name() -> str:
    return f"job/{uuid4()}"


class JobDispatcher:
    def __init__(
        self,
        router: ExecutionRouter,
        store: JobStore,
        finalizer: JobFinalizer,
        local_runner: LocalRunner,
        warm_pool: WarmPool | None = None,
        *,
        background_tasks: BackgroundTasks | None = None,
    ) -> None:
        self._router = router
        self._store = store
        self._finalizer = finalizer
        self._local_runner = local_runner
        self._warm_pool = warm_pool
        self._background_tasks = background_tasks or BackgroundTasks()

    async def create_job(
        self,
        prompt: str,
        *,
        source: str | None = None,
        chat_id: str | None = None,
        enriched_prompt: str | None = None,
    ) -> Job:
        """Insert a job and hand it to the tier the router picks."""
        mode = await self._router.resolve_mode()
        job = await self._store.insert_job(
            Job(
                prompt=prompt,
                enriched_prompt=enriched_prompt,
                source=source,
                chat_id=chat_id,
                branch=new_branch_name(),
                runner_type=RunnerType(mode.value),
            )
        )
        assert job.branch is not None
        await self.submit(job.id, job.branch, mode=mode)
        return await self._store.get_job(job.id) or job

    async def submit(
        self,
        job_id: str,
        branch: str,
        *,
        mode: ExecutionMode | None = None,
    ) -> RunnerType:
        """Queue an existing job. Returns the tier it was handed to."""
        if mode is None:
            mode = await self._router.resolve_mode()
        await self._store.update_job(job_id, status=JobStatus.QUEUED, branch=branch)

        if mode != ExecutionMode.LOCAL:
            logger.info("Job %s left to the remote runner (branch %s)", job_id, branch)
            return RunnerType.GITHUB

        if self._warm_pool is not None and self._warm_pool.has_available_worker():
            await self._store.update_job(job_id, runner_type=RunnerType.WARM)
            self._background_tasks.spawn(self._run_warm(job_id, branch), name=f"warm-job-{job_id}")
            return RunnerType.WARM

        await self._store.update_job(job_id, runner_type=RunnerType.LOCAL)
        self._background_tasks.spawn(self._run_cold(job_id, branch), name=f"local-job-{job_id}")
        return RunnerType.LOCAL

    async def _run_warm(self, job_id: str, branch: str) -> None:
        assert self._warm_pool is not None
        try:
            await self._warm_pool.assign_job(job_id, branch)
        except NoAvailableWorkerError:
            # Another job claimed the last ready worker first.
            logger.info("No warm worker left for %s, running cold", job_id)
            await self._finalizer.set_runner_type(job_id, RunnerType.LOCAL)
            await self._run_cold(job_id, branch)
        except JobSpawnError as exc:
            # Cold fallback after an unreachable worker; the job is already failed.
            logger.warning("%s", exc)

    async def _run_cold(self, job_id: str, branch: str) -> None:
        try:
            await self._local_runner.run(job_id, branch)
        except JobSpawnError as exc:
            logger.warning("%s", exc)

    async def cancel(self, job_id: str) -> bool:
        """Cancel on whichever local tier owns the job."""
        if self._warm_pool is not None and self._warm_pool.cancel_job(job_id):
            await self._finalizer.mark_cancelled(job_id)
            return True
        return await self._local_runner.cancel(job_id)


__all__ = ["JobDispatcher", "new_branch_name"]
