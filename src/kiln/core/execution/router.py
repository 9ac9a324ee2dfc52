"""Execution mode selection and job image resolution."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from kiln.core.models.enums import ExecutionMode
from kiln.version import get_kiln_version

if TYPE_CHECKING:
    from collections.abc import Callable

    from kiln.core.adapters.docker import DockerRuntime
    from kiln.core.config import ExecutionConfig

logger = logging.getLogger(__name__)


class ExecutionRouter:
    """Decides whether jobs run in local containers or on the remote CI tier.

    In ``auto`` mode the runtime probe result is cached for
    ``probe_ttl_seconds`` so a recovered daemon is noticed without probing on
    every job.
    """

    def __init__(
        self,
        config: ExecutionConfig,
        runtime: DockerRuntime,
        *,
        clock: Callable[[], float] = time.monotonic,
        version_getter: Callable[[], str | None] = get_kiln_version,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._clock = clock
        self._version_getter = version_getter
        self._runtime_available: bool | None = None
        self._checked_at = 0.0
        self._cached_image: str | None = None

    async def resolve_mode(self) -> ExecutionMode:
        """Return ``github`` or ``local``; never ``auto``."""
        mode = self._config.mode
        if mode == ExecutionMode.LOCAL:
            return ExecutionMode.LOCAL
        if mode == ExecutionMode.AUTO:
            available = await self._check_runtime_available()
            return ExecutionMode.LOCAL if available else ExecutionMode.GITHUB
        return ExecutionMode.GITHUB

    async def is_local_execution_enabled(self) -> bool:
        return await self.resolve_mode() == ExecutionMode.LOCAL

    def resolve_job_image(self) -> str:
        """Image for job containers: override, version-pinned tag, or ``job-latest``."""
        if self._config.image_override:
            return self._config.image_override
        if self._cached_image is not None:
            return self._cached_image

        version = self._version_getter()
        tag = f"job-{version}" if version else "job-latest"
        self._cached_image = f"{self._config.image_repository}:{tag}"
        logger.debug("Resolved job image %s", self._cached_image)
        return self._cached_image

    async def _check_runtime_available(self) -> bool:
        now = self._clock()
        if (
            self._runtime_available is not None
            and now - self._checked_at < self._config.probe_ttl_seconds
        ):
            return self._runtime_available

        available = await self._runtime.is_available(timeout=self._config.probe_timeout_seconds)
        if available != self._runtime_available:
            logger.info("Container runtime %s", "available" if available else "unavailable")
        self._runtime_available = available
        self._checked_at = now
        return available


__all__ = ["ExecutionRouter"]
