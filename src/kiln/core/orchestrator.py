"""Composition root: owns every execution component and their lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
from typing import TYPE_CHECKING, Any

from kiln.core.adapters.control import ControlClient
from kiln.core.adapters.db.engine import create_db_engine, create_db_tables, create_session_factory
from kiln.core.adapters.db.repositories import ClosingAwareSessionFactory, JobRepository
from kiln.core.adapters.docker import DockerRuntime
from kiln.core.config import KilnConfig
from kiln.core.execution.dispatch import JobDispatcher
from kiln.core.execution.hooks import JobFinalizer
from kiln.core.execution.local_runner import LocalRunner
from kiln.core.execution.router import ExecutionRouter
from kiln.core.execution.warm_pool import WarmPool
from kiln.core.execution.workspace import WorkspaceManager
from kiln.debug_log import recent_problems
from kiln.utils.background_tasks import BackgroundTasks
from kiln.version import get_kiln_version

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

    from kiln.core.execution.hooks import JobStore, MemoryExtractor, Notifier

logger = logging.getLogger(__name__)

_BACKGROUND_DRAIN_SECONDS = 5.0


class OrchestratorStatus(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"


class Orchestrator:
    """Builds the router, runners, pool and workspace from one config.

    Collaborators (runtime, control client, job store, notifier, memory
    extractor) may be injected; otherwise SQLite-backed defaults are created
    on ``start()``.
    """

    def __init__(
        self,
        config: KilnConfig | None = None,
        *,
        db_path: str | Path | None = None,
        runtime: DockerRuntime | None = None,
        control: ControlClient | None = None,
        store: JobStore | None = None,
        notifier: Notifier | None = None,
        memory: MemoryExtractor | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config or KilnConfig.load()
        self._db_path = db_path
        self._environ = os.environ if environ is None else environ
        self.runtime = runtime or DockerRuntime(self.config.execution.runtime_binary)
        self.control = control or ControlClient()
        self._store = store
        self._notifier = notifier
        self._memory = memory

        self._status = OrchestratorStatus.STOPPED
        self._stop_event = asyncio.Event()
        self._engine: AsyncEngine | None = None
        self._session_factory: ClosingAwareSessionFactory | None = None
        self._owned_store: JobRepository | None = None
        self.background_tasks = BackgroundTasks()
        self.router = ExecutionRouter(self.config.execution, self.runtime)
        self.local_runner: LocalRunner | None = None
        self.warm_pool: WarmPool | None = None
        self.workspace: WorkspaceManager | None = None
        self.dispatcher: JobDispatcher | None = None
        self.orphans_cleaned = 0

    @property
    def status_value(self) -> OrchestratorStatus:
        return self._status

    @property
    def store(self) -> JobStore:
        if self._store is None:
            msg = "Orchestrator has not been started"
            raise RuntimeError(msg)
        return self._store

    async def start(self) -> None:
        """Open persistence, reconcile orphans, and warm up the pool."""
        if self._status is not OrchestratorStatus.STOPPED:
            msg = f"Cannot start orchestrator in state {self._status.value}"
            raise RuntimeError(msg)
        self._status = OrchestratorStatus.STARTING
        self._stop_event.clear()

        try:
            await self._open_store()
            self._build_components()
            assert self.local_runner is not None

            self.orphans_cleaned = await self.local_runner.cleanup_orphans()
            if self.warm_pool is not None:
                await self.warm_pool.init()
        except Exception:  # quality-allow-broad-except
            await self._close_resources()
            self._status = OrchestratorStatus.STOPPED
            raise

        self._status = OrchestratorStatus.RUNNING
        logger.info(
            "Orchestrator running: mode=%s image=%s warm_pool=%d workspace=%s",
            self.config.execution.mode.value,
            self.router.resolve_job_image(),
            self.config.warm_pool.size,
            "enabled" if self.workspace is not None else "disabled",
        )

    async def _open_store(self) -> None:
        if self._store is not None:
            return
        self._engine = await create_db_engine(self._db_path)
        await create_db_tables(self._engine)
        self._session_factory = ClosingAwareSessionFactory(create_session_factory(self._engine))
        repository = JobRepository(self._session_factory)
        self._owned_store = repository
        self._store = repository
        if self._notifier is None:
            self._notifier = repository

    def _build_components(self) -> None:
        if self._notifier is None:
            msg = "A notifier is required when a custom job store is injected"
            raise RuntimeError(msg)
        finalizer = JobFinalizer(self.store, self._notifier, self._memory)
        self.local_runner = LocalRunner(
            self.config,
            self.runtime,
            self.router,
            finalizer,
            environ=self._environ,
            background_tasks=self.background_tasks,
        )
        if self.config.warm_pool.size > 0:
            self.warm_pool = WarmPool(
                self.config,
                self.runtime,
                self.control,
                self.router,
                finalizer,
                self.local_runner,
                environ=self._environ,
                background_tasks=self.background_tasks,
            )
        if self.config.workspace.enabled:
            self.workspace = WorkspaceManager(
                self.config, self.runtime, self.control, self.router, environ=self._environ
            )
        self.dispatcher = JobDispatcher(
            self.router,
            self.store,
            finalizer,
            self.local_runner,
            self.warm_pool,
            background_tasks=self.background_tasks,
        )

    async def stop(self, *, reason: str = "shutdown requested") -> None:
        """Tear down pool, workspace and background work. Safe to call twice."""
        if self._status in (OrchestratorStatus.DRAINING, OrchestratorStatus.STOPPED):
            return
        self._status = OrchestratorStatus.DRAINING

        if self.warm_pool is not None:
            await self.warm_pool.shutdown()
        if self.workspace is not None:
            await self.workspace.shutdown()

        if not await self.background_tasks.wait(timeout=_BACKGROUND_DRAIN_SECONDS):
            logger.warning("Cancelling unfinished background tasks")
        await self.background_tasks.shutdown()
        await self._close_resources()

        self._status = OrchestratorStatus.STOPPED
        self._stop_event.set()
        logger.info("Orchestrator stopped: %s", reason)

    async def _close_resources(self) -> None:
        await self.control.close()
        if self._session_factory is not None:
            self._session_factory.mark_closing()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        if self._owned_store is not None:
            if self._notifier is self._owned_store:
                self._notifier = None
            self._store = None
            self._owned_store = None

    async def wait_until_stopped(self) -> None:
        await self._stop_event.wait()

    async def status(self) -> dict[str, Any]:
        """Aggregate snapshot of every tier for status displays."""
        mode = await self.router.resolve_mode()
        return {
            "state": self._status.value,
            "version": get_kiln_version(),
            "configured_mode": self.config.execution.mode.value,
            "mode": mode.value,
            "image": self.router.resolve_job_image(),
            "local": self.local_runner.get_status() if self.local_runner is not None else None,
            "warm_pool": self.warm_pool.get_status() if self.warm_pool is not None else None,
            "workspace": (
                self.workspace.get_status()
                if self.workspace is not None
                else {"enabled": False}
            ),
            "recent_problems": recent_problems(),
        }


@contextlib.asynccontextmanager
async def run_orchestrator(orchestrator: Orchestrator) -> AsyncIterator[Orchestrator]:
    """``async with`` wrapper that always stops what it started."""
    await orchestrator.start()
    try:
        yield orchestrator
    finally:
        await orchestrator.stop()


__all__ = ["Orchestrator", "OrchestratorStatus", "run_orchestrator"]
