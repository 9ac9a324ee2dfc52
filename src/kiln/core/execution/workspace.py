"""Long-lived interactive workspace container, started lazily on first use."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from typing import TYPE_CHECKING, Any

from kiln.core import limits
from kiln.core.adapters.docker import ContainerSpec
from kiln.core.errors import ContainerRuntimeError, WorkerUnreachableError, WorkspaceStartError
from kiln.core.execution.container_env import build_credential_env
from kiln.core.models.enums import WorkspaceStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from kiln.core.adapters.control import ControlClient
    from kiln.core.adapters.docker import DockerRuntime
    from kiln.core.config import KilnConfig
    from kiln.core.execution.router import ExecutionRouter

logger = logging.getLogger(__name__)

WORKSPACE_WORKER_MODULE = "kiln.workers.workspace_worker"


class WorkspaceManager:
    """Owns the single ``<prefix>-workspace`` container.

    Concurrent ``ensure_running`` callers share one in-flight start.
    """

    def __init__(
        self,
        config: KilnConfig,
        runtime: DockerRuntime,
        control: ControlClient,
        router: ExecutionRouter,
        *,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._ws_config = config.workspace
        self._runtime = runtime
        self._control = control
        self._router = router
        self._environ = os.environ if environ is None else environ
        self._clock = clock
        self.status = WorkspaceStatus.STOPPED
        self.container_id: str | None = None
        self.started_at: float | None = None
        self.last_activity_at: float | None = None
        self._start_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None

    @property
    def container_name(self) -> str:
        return f"{self._config.execution.name_prefix}-workspace"

    @property
    def port(self) -> int:
        return self._ws_config.port

    @property
    def _host(self) -> str:
        return self._config.agent.worker_hostname

    async def ensure_running(self) -> None:
        """Start the container if needed; raise ``WorkspaceStartError`` on failure."""
        if self.status is WorkspaceStatus.READY:
            self.last_activity_at = self._clock()
            return
        if self._start_task is None or self._start_task.done():
            self._start_task = asyncio.create_task(self._start(), name="workspace-start")
        task = self._start_task
        try:
            await asyncio.shield(task)
        finally:
            if self._start_task is task and task.done():
                self._start_task = None

    async def _start(self) -> None:
        logger.info("Starting workspace container...")
        await self._runtime.remove(self.container_name)
        self.status = WorkspaceStatus.STARTING

        env = {"IDLE_TIMEOUT": str(self._ws_config.idle_timeout_seconds)}
        env.update(build_credential_env(self._config.agent, self._environ))
        spec = ContainerSpec(
            image=self._router.resolve_job_image(),
            name=self.container_name,
            labels={self._config.label("workspace"): "true"},
            ports={self.port: limits.WORKER_CONTAINER_PORT},
            env=env,
            entrypoint="python",
            command=("-m", WORKSPACE_WORKER_MODULE),
            detach=True,
        )
        try:
            self.container_id = await self._runtime.run_detached(
                spec, timeout=self._config.execution.spawn_timeout_seconds
            )
        except ContainerRuntimeError as exc:
            self.status = WorkspaceStatus.DEAD
            msg = f"Failed to start workspace: {exc}"
            raise WorkspaceStartError(msg) from exc

        now = self._clock()
        self.started_at = now
        self.last_activity_at = now

        if not await self._wait_until_ready():
            self.status = WorkspaceStatus.DEAD
            msg = "Workspace container failed to become ready within timeout"
            raise WorkspaceStartError(msg)

        self.status = WorkspaceStatus.READY
        if self._health_task is not None and not self._health_task.done():
            self._health_task.cancel()
        self._health_task = asyncio.create_task(self._health_loop(), name="workspace-health")
        logger.info("Container ready on port %d", self.port)

    async def _wait_until_ready(self) -> bool:
        deadline = time.monotonic() + self._ws_config.startup_timeout_seconds
        while time.monotonic() < deadline:
            await asyncio.sleep(self._ws_config.startup_poll_seconds)
            health = await self._control.health(
                self._host, self.port, timeout=limits.HEALTH_REQUEST_TIMEOUT_SECONDS
            )
            if health is not None and health.get("ready"):
                return True
        return False

    async def _health_loop(self) -> None:
        while self.status is WorkspaceStatus.READY:
            await asyncio.sleep(self._ws_config.health_interval_seconds)
            if not await self.check_health():
                return

    async def check_health(self) -> bool:
        """Probe once; a single failure marks the workspace dead."""
        if self.status is not WorkspaceStatus.READY:
            return False
        health = await self._control.health(
            self._host, self.port, timeout=limits.HEALTH_REQUEST_TIMEOUT_SECONDS
        )
        if health is None and self.status is WorkspaceStatus.READY:
            logger.error("Health check failed, marking dead")
            self.status = WorkspaceStatus.DEAD
            return False
        return self.status is WorkspaceStatus.READY

    async def fetch(self, path: str, body: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """POST ``body`` to the workspace, starting it first if necessary."""
        await self.ensure_running()
        self.last_activity_at = self._clock()
        response = await self._control.post(
            self._host,
            self.port,
            path,
            body or {},
            timeout=self._ws_config.request_timeout_seconds,
        )
        return response.body

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "enabled": self._ws_config.enabled,
            "status": self.status.value,
            "container_id": self.container_id,
            "port": self.port,
            "uptime_seconds": int(now - self.started_at) if self.started_at is not None else 0,
            "idle_seconds": (
                int(now - self.last_activity_at) if self.last_activity_at is not None else 0
            ),
        }

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        for task in (self._health_task, self._start_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, WorkspaceStartError):
                    await task
        self._health_task = None
        self._start_task = None

        try:
            await self._control.post(
                self._host, self.port, "/shutdown", timeout=limits.HEALTH_REQUEST_TIMEOUT_SECONDS
            )
        except WorkerUnreachableError as exc:
            logger.debug("Workspace /shutdown ignored: %s", exc)
        await self._runtime.stop(self.container_name, timeout=limits.CONTAINER_STOP_TIMEOUT_SECONDS)
        await self._runtime.remove(self.container_name)

        self.status = WorkspaceStatus.STOPPED
        self.container_id = None
        self.started_at = None
        self.last_activity_at = None
        logger.info("Stopped")


__all__ = ["WORKSPACE_WORKER_MODULE", "WorkspaceManager"]
