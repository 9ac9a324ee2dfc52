"""Cold-start runner: one ``docker run --rm`` container per job.

Concurrency is capped at ``local.max_concurrent``; excess jobs wait in a FIFO
queue and their ``run()`` calls resolve once the queued job finishes.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Any

import anyio

from kiln.core import limits
from kiln.core.adapters.docker import ContainerSpec
from kiln.core.errors import ContainerRuntimeError, JobSpawnError
from kiln.core.execution.container_env import build_agent_env
from kiln.core.execution.hooks import short_job_id
from kiln.core.execution.log_buffer import LogBuffer
from kiln.core.models.enums import PENDING_JOB_STATUSES, JobStatus, RunnerType
from kiln.core.time import utc_now
from kiln.utils.background_tasks import BackgroundTasks

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from kiln.core.adapters.docker import DockerRuntime
    from kiln.core.config import KilnConfig
    from kiln.core.execution.hooks import JobFinalizer
    from kiln.core.execution.router import ExecutionRouter

logger = logging.getLogger(__name__)

ORPHANED_JOB_ERROR = "Orphaned: orchestrator restarted while job was running"

_READ_CHUNK_BYTES = 4096


@dataclass(slots=True)
class ActiveJob:
    job_id: str
    container_name: str
    process: asyncio.subprocess.Process
    started_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class PendingJob:
    job_id: str
    branch: str
    queued_at: datetime = field(default_factory=utc_now)
    done: anyio.Event = field(default_factory=anyio.Event)
    error: BaseException | None = None


class LocalRunner:
    """Runs jobs in locally spawned, self-removing containers."""

    def __init__(
        self,
        config: KilnConfig,
        runtime: DockerRuntime,
        router: ExecutionRouter,
        finalizer: JobFinalizer,
        *,
        environ: Mapping[str, str] | None = None,
        background_tasks: BackgroundTasks | None = None,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._router = router
        self._finalizer = finalizer
        self._environ = os.environ if environ is None else environ
        self._background_tasks = background_tasks or BackgroundTasks()
        self._stdout = stdout
        self._stderr = stderr
        self._active: dict[str, ActiveJob] = {}
        self._queue: deque[PendingJob] = deque()
        self._cancelled: set[str] = set()
        self._running = 0
        self._draining = False

    @property
    def max_concurrent(self) -> int:
        return self._config.local.max_concurrent

    @property
    def running(self) -> int:
        return self._running

    @property
    def job_label(self) -> str:
        return self._config.label("job")

    def container_name(self, job_id: str) -> str:
        return f"{self._config.execution.name_prefix}-job-{short_job_id(job_id)}"

    async def run(self, job_id: str, branch: str) -> None:
        """Run a job to completion, waiting in the queue when at capacity.

        Job-level failures are recorded on the job, not raised. Only a
        container that could not be started at all raises ``JobSpawnError``.
        """
        if self._running >= self.max_concurrent:
            entry = PendingJob(job_id=job_id, branch=branch)
            self._queue.append(entry)
            logger.info(
                "Job %s queued (%d waiting, %d/%d running)",
                job_id,
                len(self._queue),
                self._running,
                self.max_concurrent,
            )
            await entry.done.wait()
            if entry.error is not None:
                raise entry.error
            return

        self._running += 1
        await self._execute(job_id, branch)

    async def _execute(self, job_id: str, branch: str) -> None:
        # The caller has already reserved a slot in ``_running``.
        image = self._router.resolve_job_image()
        name = self.container_name(job_id)
        spec = ContainerSpec(
            image=image,
            name=name,
            labels={self.job_label: job_id},
            env=build_agent_env(self._config.agent, self._environ, branch=branch),
            remove_on_exit=True,
        )
        logger.info(
            "Starting job %s (%d/%d slots) image=%s",
            job_id,
            self._running,
            self.max_concurrent,
            image,
        )

        try:
            process = await self._runtime.spawn_attached(spec)
        except OSError as exc:
            self._running -= 1
            logger.error("Container spawn failed for %s: %s", job_id, exc)
            await self._finalizer.mark_failed(job_id, str(exc), tier="local", notify=False)
            self._drain_queue()
            raise JobSpawnError(job_id, str(exc)) from exc

        self._active[job_id] = ActiveJob(job_id=job_id, container_name=name, process=process)
        try:
            await self._finalizer.mark_running(job_id, runner_type=RunnerType.LOCAL)
            stdout_buf = LogBuffer(self._config.local.max_log_bytes)
            stderr_buf = LogBuffer(self._config.local.max_log_bytes)
            await asyncio.gather(
                self._pump(process.stdout, stdout_buf, self._stdout or sys.stdout, job_id),
                self._pump(process.stderr, stderr_buf, self._stderr or sys.stderr, job_id),
            )
            code = await process.wait()
            await self._record_exit(job_id, code, stderr_buf)
        finally:
            self._active.pop(job_id, None)
            self._cancelled.discard(job_id)
            self._running -= 1
            self._drain_queue()

    async def _record_exit(self, job_id: str, code: int, stderr_buf: LogBuffer) -> None:
        if job_id in self._cancelled:
            logger.info("Job %s stopped after cancellation (exit code %s)", job_id, code)
            return
        if code == 0:
            logger.info("Job %s completed successfully", job_id)
            await self._finalizer.mark_completed(job_id, tier="local")
            return

        error = stderr_buf.tail(self._config.local.error_tail_chars) or (
            f"Container exited with code {code}"
        )
        logger.error("Job %s failed (exit code %s)", job_id, code)
        await self._finalizer.mark_failed(
            job_id, error, tier="local", reason=f"exit code {code}"
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        buffer: LogBuffer,
        sink: IO[str],
        job_id: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        prefix = f"[job:{short_job_id(job_id)}] "
        while True:
            data = await stream.read(_READ_CHUNK_BYTES)
            text = decoder.decode(data, final=not data)
            if text:
                buffer.append(text)
                if self._config.local.forward_output:
                    sink.write(prefix + text)
                    sink.flush()
            if not data:
                return

    def _drain_queue(self) -> None:
        """Start queued jobs, oldest first, while capacity remains."""
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue and self._running < self.max_concurrent:
                entry = self._queue.popleft()
                self._running += 1
                self._background_tasks.spawn(
                    self._run_queued(entry), name=f"local-job-{short_job_id(entry.job_id)}"
                )
        finally:
            self._draining = False

    async def _run_queued(self, entry: PendingJob) -> None:
        try:
            await self._execute(entry.job_id, entry.branch)
        except JobSpawnError as exc:
            entry.error = exc
        finally:
            entry.done.set()

    async def cancel(self, job_id: str) -> bool:
        """Stop a running job or drop a queued one. Returns whether it was found."""
        active = self._active.get(job_id)
        if active is not None:
            self._cancelled.add(job_id)
            stopped = await self._runtime.stop(
                active.container_name,
                grace_seconds=self._config.local.stop_grace_seconds,
                timeout=limits.CONTAINER_STOP_TIMEOUT_SECONDS,
            )
            if not stopped:
                with contextlib.suppress(ProcessLookupError):
                    active.process.kill()
            await self._finalizer.mark_cancelled(job_id)
            logger.info("Cancelled running job %s", job_id)
            return True

        for entry in self._queue:
            if entry.job_id == job_id:
                self._queue.remove(entry)
                entry.done.set()
                await self._finalizer.mark_cancelled(job_id)
                logger.info("Cancelled queued job %s", job_id)
                return True

        return False

    async def cleanup_orphans(self) -> int:
        """Stop job containers left over from a previous process and fail their jobs."""
        try:
            listings = await self._runtime.list_by_label(self.job_label)
        except ContainerRuntimeError as exc:
            logger.debug("Orphan cleanup skipped: %s", exc)
            return 0
        if not listings:
            return 0

        logger.info("Found %d orphaned container(s), stopping...", len(listings))
        store = self._finalizer.store
        for listing in listings:
            if await self._runtime.stop(listing.name, timeout=limits.CONTAINER_STOP_TIMEOUT_SECONDS):
                logger.info("Stopped orphaned container: %s", listing.name)
            else:
                logger.error("Failed to stop orphaned container: %s", listing.name)

            if not listing.label_value:
                continue
            try:
                job = await store.get_job(listing.label_value)
                if job is not None and job.status in PENDING_JOB_STATUSES:
                    await store.update_job(
                        job.id,
                        status=JobStatus.FAILED,
                        completed_at=utc_now(),
                        error=ORPHANED_JOB_ERROR,
                    )
            except Exception as exc:  # quality-allow-broad-except
                logger.error("Failed to reconcile orphaned job %s: %s", listing.label_value, exc)
        return len(listings)

    def active_jobs(self) -> list[dict[str, str]]:
        return [
            {"job_id": job.job_id, "container_name": job.container_name}
            for job in self._active.values()
        ]

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "max_concurrent": self.max_concurrent,
            "active": self.active_jobs(),
            "queued": [entry.job_id for entry in self._queue],
        }


__all__ = ["ORPHANED_JOB_ERROR", "ActiveJob", "LocalRunner", "PendingJob"]
