"""Warm worker pool: long-lived job containers that take work over HTTP.

Every mutation of a worker's status happens between awaits, so two callers on
the event loop can never claim the same ``ready`` worker or recycle the same
slot twice.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from kiln.core import limits
from kiln.core.adapters.docker import ContainerSpec
from kiln.core.errors import ContainerRuntimeError, NoAvailableWorkerError, WorkerUnreachableError
from kiln.core.execution.container_env import build_agent_env
from kiln.core.models.enums import RunnerType, WorkerStatus
from kiln.utils.background_tasks import BackgroundTasks

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from kiln.core.adapters.control import ControlClient
    from kiln.core.adapters.docker import DockerRuntime
    from kiln.core.config import KilnConfig
    from kiln.core.execution.hooks import JobFinalizer
    from kiln.core.execution.local_runner import LocalRunner
    from kiln.core.execution.router import ExecutionRouter

logger = logging.getLogger(__name__)

WARM_WORKER_MODULE = "kiln.workers.warm_worker"
_NOTIFY_ERROR_CHARS = 100


@dataclass(slots=True)
class Worker:
    """One pool slot. ``current_job_id`` is set only while ``busy``."""

    index: int
    container_name: str
    port: int
    status: WorkerStatus = WorkerStatus.STARTING
    container_id: str | None = None
    jobs_run: int = 0
    started_at: float = 0.0
    current_job_id: str | None = None
    consecutive_failures: int = 0
    revive_attempts: int = 0
    next_revive_at: float | None = None

    def to_dict(self, now: float) -> dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status.value,
            "port": self.port,
            "container_id": self.container_id,
            "jobs_run": self.jobs_run,
            "current_job_id": self.current_job_id,
            "uptime_seconds": int(max(0.0, now - self.started_at)),
            "consecutive_failures": self.consecutive_failures,
            "revive_attempts": self.revive_attempts,
        }


class WarmPool:
    """Fixed-size pool of warm worker containers on consecutive host ports."""

    def __init__(
        self,
        config: KilnConfig,
        runtime: DockerRuntime,
        control: ControlClient,
        router: ExecutionRouter,
        finalizer: JobFinalizer,
        fallback: LocalRunner,
        *,
        environ: Mapping[str, str] | None = None,
        background_tasks: BackgroundTasks | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._pool_config = config.warm_pool
        self._runtime = runtime
        self._control = control
        self._router = router
        self._finalizer = finalizer
        self._fallback = fallback
        self._environ = os.environ if environ is None else environ
        self._background_tasks = background_tasks or BackgroundTasks()
        self._clock = clock
        self._workers: list[Worker] = []
        self._inflight: set[int] = set()
        self._cancelled: set[str] = set()
        self._health_task: asyncio.Task[None] | None = None
        self._shutting_down = False

    @property
    def size(self) -> int:
        return self._pool_config.size

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers)

    @property
    def label(self) -> str:
        return self._config.label("warm")

    @property
    def _host(self) -> str:
        return self._config.agent.worker_hostname

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Remove leftovers, spawn every slot and wait for them to report ready."""
        if self._workers:
            return
        logger.info("Initializing pool with %d worker(s)...", self.size)
        await self._cleanup_orphans()

        prefix = self._config.execution.name_prefix
        for index in range(self.size):
            worker = Worker(
                index=index,
                container_name=f"{prefix}-warm-{index}",
                port=self._pool_config.port_start + index,
                started_at=self._clock(),
            )
            self._workers.append(worker)
            if not await self._spawn(worker):
                self._mark_dead(worker)

        starting = [w for w in self._workers if w.status is WorkerStatus.STARTING]
        results = await asyncio.gather(*(self._wait_until_ready(w) for w in starting))
        for worker, ready in zip(starting, results, strict=True):
            if ready:
                worker.status = WorkerStatus.READY
                logger.info("Worker %d ready", worker.index)
            elif worker.status is WorkerStatus.STARTING:
                logger.error("Worker %d failed to start within timeout", worker.index)
                self._mark_dead(worker)

        if not self._shutting_down:
            self._health_task = asyncio.create_task(self._health_loop(), name="warm-pool-health")
        logger.info(
            "Pool ready: %d/%d workers",
            sum(1 for w in self._workers if w.status is WorkerStatus.READY),
            self.size,
        )

    async def shutdown(self) -> None:
        """Stop the health tick and every worker container. Safe to call twice."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down...")

        if self._health_task is not None and not self._health_task.done():
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
        self._health_task = None

        await asyncio.gather(*(self._stop_worker(worker) for worker in self._workers))
        logger.info("All workers stopped")

    async def _stop_worker(self, worker: Worker) -> None:
        await self._request_shutdown(worker)
        await self._runtime.stop(worker.container_name, timeout=limits.CONTAINER_STOP_TIMEOUT_SECONDS)
        await self._runtime.remove(worker.container_name)

    async def _cleanup_orphans(self) -> None:
        try:
            listings = await self._runtime.list_by_label(self.label, include_stopped=True)
        except ContainerRuntimeError as exc:
            logger.debug("Warm orphan cleanup skipped: %s", exc)
            return
        if not listings:
            return
        logger.info("Cleaning up %d orphaned warm container(s)...", len(listings))
        for listing in listings:
            await self._runtime.remove(listing.name)

    # ------------------------------------------------------------------
    # Job assignment
    # ------------------------------------------------------------------

    def has_available_worker(self) -> bool:
        if self._shutting_down:
            return False
        return any(worker.status is WorkerStatus.READY for worker in self._workers)

    async def assign_job(self, job_id: str, branch: str) -> None:
        """Run a job on the first ready worker and record its outcome.

        If the worker turns out to be unreachable the job is re-run on the
        cold runner and this call waits for that run instead.
        """
        worker = next((w for w in self._workers if w.status is WorkerStatus.READY), None)
        if worker is None or self._shutting_down:
            raise NoAvailableWorkerError("No available workers")

        worker.status = WorkerStatus.BUSY
        worker.current_job_id = job_id
        self._inflight.add(worker.index)
        logger.info("Assigning job %s to worker %d (port %d)", job_id, worker.index, worker.port)

        try:
            await self._finalizer.mark_running(job_id, runner_type=RunnerType.WARM)
            response = await self._control.post(
                self._host,
                worker.port,
                "/run",
                {"jobId": job_id, "branch": branch},
                timeout=self._pool_config.run_timeout_seconds,
            )
        except WorkerUnreachableError as exc:
            self._inflight.discard(worker.index)
            logger.error(
                "Worker %d unreachable during job %s: %s", worker.index, job_id, exc
            )
            if worker.current_job_id == job_id:
                worker.status = WorkerStatus.DEAD
                worker.current_job_id = None
                self._schedule_recycle(worker)
            if job_id in self._cancelled:
                self._cancelled.discard(job_id)
                return
            await self._fall_back_to_cold(job_id, branch)
            return
        finally:
            self._inflight.discard(worker.index)

        if worker.current_job_id == job_id:
            worker.status = WorkerStatus.READY
            worker.current_job_id = None
            worker.jobs_run += 1
            worker.consecutive_failures = 0

        await self._record_outcome(worker, job_id, response.body, response.status_code)

        if worker.status is WorkerStatus.READY:
            self._check_recycle(worker)

    async def _record_outcome(
        self, worker: Worker, job_id: str, body: dict[str, Any], status_code: int
    ) -> None:
        if job_id in self._cancelled:
            self._cancelled.discard(job_id)
            logger.info("Job %s on worker %d ended after cancellation", job_id, worker.index)
            return
        if body.get("status") == "completed":
            logger.info("Job %s completed on worker %d", job_id, worker.index)
            await self._finalizer.mark_completed(job_id, tier="warm")
            return

        error = str(body.get("error") or f"Worker responded with HTTP {status_code}")
        logger.error("Job %s failed on worker %d: %s", job_id, worker.index, error)
        await self._finalizer.mark_failed(
            job_id, error, tier="warm", reason=error[:_NOTIFY_ERROR_CHARS]
        )

    async def _fall_back_to_cold(self, job_id: str, branch: str) -> None:
        logger.info("Falling back to cold execution for job %s", job_id)
        await self._finalizer.set_runner_type(job_id, RunnerType.LOCAL)
        await self._fallback.run(job_id, branch)

    def cancel_job(self, job_id: str) -> bool:
        """Ask the owning worker to cancel ``job_id``. Returns whether one owned it."""
        worker = next((w for w in self._workers if w.current_job_id == job_id), None)
        if worker is None:
            return False
        logger.info("Cancelling job %s on worker %d", job_id, worker.index)
        self._cancelled.add(job_id)
        self._background_tasks.spawn(
            self._post_best_effort(worker, "/cancel"), name=f"warm-cancel-{worker.index}"
        )
        return True

    # ------------------------------------------------------------------
    # Health and recycling
    # ------------------------------------------------------------------

    async def _health_loop(self) -> None:
        while not self._shutting_down:
            await asyncio.sleep(self._pool_config.health_interval_seconds)
            try:
                await self.check_health()
            except Exception as exc:  # quality-allow-broad-except
                logger.error("Warm pool health check failed: %s", exc)

    async def check_health(self) -> None:
        """One health tick over every slot."""
        if self._shutting_down:
            return

        threshold = self._pool_config.max_consecutive_failures
        for worker in self._workers:
            if worker.status is WorkerStatus.DEAD:
                self._maybe_revive(worker)
                continue
            if worker.status in (WorkerStatus.RECYCLING, WorkerStatus.STARTING):
                continue

            health = await self._control.health(
                self._host, worker.port, timeout=limits.HEALTH_REQUEST_TIMEOUT_SECONDS
            )
            if self._shutting_down:
                return
            if worker.status in (WorkerStatus.RECYCLING, WorkerStatus.DEAD):
                continue

            if health is not None:
                worker.consecutive_failures = 0
                self._reconcile(worker, health)
            else:
                worker.consecutive_failures += 1
                if worker.consecutive_failures >= threshold:
                    logger.error(
                        "Worker %d failed %d health checks, recycling...", worker.index, threshold
                    )
                    self._schedule_recycle(worker, force=True)
                    continue

            if worker.status is WorkerStatus.READY:
                self._check_recycle(worker)

    def _reconcile(self, worker: Worker, health: dict[str, Any]) -> None:
        if not health.get("ready") or health.get("busy"):
            return
        if worker.status is WorkerStatus.BUSY and worker.index not in self._inflight:
            logger.warning(
                "Worker %d reports idle while marked busy with %s; marking ready",
                worker.index,
                worker.current_job_id,
            )
            worker.status = WorkerStatus.READY
            worker.current_job_id = None

    def _check_recycle(self, worker: Worker) -> None:
        if worker.status is not WorkerStatus.READY:
            return
        max_jobs = self._pool_config.max_jobs_per_worker
        if worker.jobs_run >= max_jobs:
            logger.info(
                "Worker %d hit max jobs (%d/%d), recycling...", worker.index, worker.jobs_run, max_jobs
            )
            self._schedule_recycle(worker)
            return
        if self._clock() - worker.started_at >= self._pool_config.max_lifetime_seconds:
            logger.info("Worker %d exceeded max lifetime, recycling...", worker.index)
            self._schedule_recycle(worker)

    def _schedule_recycle(self, worker: Worker, *, force: bool = False) -> None:
        if worker.status is WorkerStatus.RECYCLING or self._shutting_down:
            return
        self._background_tasks.spawn(
            self.recycle(worker, force=force), name=f"warm-recycle-{worker.index}"
        )

    async def recycle(self, worker: Worker, *, force: bool = False) -> bool:
        """Replace a slot's container in place.

        No-op while already recycling. A busy worker is only replaced when
        ``force`` is set (failed health checks); policy recycles wait for the
        job to finish and are re-checked then.
        """
        if worker.status is WorkerStatus.RECYCLING or self._shutting_down:
            return False
        if worker.status is WorkerStatus.BUSY and not force:
            logger.debug("Worker %d picked up a job, deferring recycle", worker.index)
            return False
        worker.status = WorkerStatus.RECYCLING
        worker.current_job_id = None
        worker.consecutive_failures = 0

        await self._request_shutdown(worker)
        await self._runtime.remove(worker.container_name)
        if self._shutting_down:
            return False

        if not await self._spawn(worker):
            self._mark_dead(worker)
            return False
        if self._shutting_down:
            await self._runtime.remove(worker.container_name)
            return False

        if await self._wait_until_ready(worker):
            worker.status = WorkerStatus.READY
            worker.revive_attempts = 0
            worker.next_revive_at = None
            logger.info("Worker %d recycled and ready", worker.index)
            return True

        logger.error("Worker %d failed to restart after recycle", worker.index)
        self._mark_dead(worker)
        return False

    async def reinit_worker(self, index: int) -> bool:
        """Operator reset for a slot that exhausted its revive attempts."""
        if not 0 <= index < len(self._workers):
            msg = f"No warm worker slot {index}"
            raise ValueError(msg)
        worker = self._workers[index]
        if worker.status is WorkerStatus.BUSY:
            return False
        worker.revive_attempts = 0
        worker.next_revive_at = None
        return await self.recycle(worker)

    def _mark_dead(self, worker: Worker) -> None:
        worker.status = WorkerStatus.DEAD
        worker.current_job_id = None
        if worker.revive_attempts >= self._pool_config.revive_max_attempts:
            worker.next_revive_at = None
            logger.error(
                "Worker %d is dead after %d revive attempt(s); waiting for reinit",
                worker.index,
                worker.revive_attempts,
            )
            return
        delay = self._pool_config.revive_backoff_seconds * (2**worker.revive_attempts)
        worker.next_revive_at = self._clock() + delay
        logger.warning("Worker %d is dead; revive in %.0fs", worker.index, delay)

    def _maybe_revive(self, worker: Worker) -> None:
        if worker.next_revive_at is None or self._clock() < worker.next_revive_at:
            return
        worker.revive_attempts += 1
        worker.next_revive_at = None
        logger.info("Reviving worker %d (attempt %d)", worker.index, worker.revive_attempts)
        self._schedule_recycle(worker)

    # ------------------------------------------------------------------
    # Container plumbing
    # ------------------------------------------------------------------

    async def _spawn(self, worker: Worker) -> bool:
        spec = ContainerSpec(
            image=self._router.resolve_job_image(),
            name=worker.container_name,
            labels={self.label: "true"},
            ports={worker.port: limits.WORKER_CONTAINER_PORT},
            env=build_agent_env(self._config.agent, self._environ),
            entrypoint="python",
            command=("-m", WARM_WORKER_MODULE),
            detach=True,
        )
        logger.info("Spawning worker %d on port %d...", worker.index, worker.port)
        try:
            container_id = await self._runtime.run_detached(
                spec, timeout=self._config.execution.spawn_timeout_seconds
            )
        except ContainerRuntimeError as exc:
            logger.error("Failed to spawn worker %d: %s", worker.index, exc)
            return False

        worker.container_id = container_id
        worker.started_at = self._clock()
        worker.jobs_run = 0
        worker.consecutive_failures = 0
        return True

    async def _wait_until_ready(self, worker: Worker) -> bool:
        deadline = time.monotonic() + self._pool_config.startup_timeout_seconds
        while time.monotonic() < deadline and not self._shutting_down:
            await asyncio.sleep(self._pool_config.startup_poll_seconds)
            health = await self._control.health(
                self._host, worker.port, timeout=limits.HEALTH_REQUEST_TIMEOUT_SECONDS
            )
            if health is not None and health.get("ready"):
                return True
        return False

    async def _request_shutdown(self, worker: Worker) -> None:
        await self._post_best_effort(worker, "/shutdown")

    async def _post_best_effort(self, worker: Worker, path: str) -> None:
        try:
            await self._control.post(
                self._host, worker.port, path, timeout=limits.HEALTH_REQUEST_TIMEOUT_SECONDS
            )
        except WorkerUnreachableError as exc:
            logger.debug("Worker %d %s ignored: %s", worker.index, path, exc)

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "size": self.size,
            "available": sum(1 for w in self._workers if w.status is WorkerStatus.READY),
            "busy": sum(1 for w in self._workers if w.status is WorkerStatus.BUSY),
            "dead": sum(1 for w in self._workers if w.status is WorkerStatus.DEAD),
            "shutting_down": self._shutting_down,
            "workers": [worker.to_dict(now) for worker in self._workers],
        }


__all__ = ["WARM_WORKER_MODULE", "WarmPool", "Worker"]
