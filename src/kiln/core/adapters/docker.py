"""Container runtime adapter driving the ``docker`` CLI.

All calls go through ``create_subprocess_exec`` so JSON secrets in ``-e``
arguments are never shell-interpreted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from kiln.core import limits
from kiln.core.adapters.process import (
    ProcessExecutionError,
    run_exec_capture,
    run_exec_checked,
    spawn_exec,
)
from kiln.core.errors import ContainerRuntimeError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to build a ``docker run`` invocation."""

    image: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    ports: Mapping[int, int] = field(default_factory=dict)
    entrypoint: str | None = None
    command: Sequence[str] = ()
    detach: bool = False
    remove_on_exit: bool = False

    def run_args(self) -> list[str]:
        args = ["run"]
        if self.detach:
            args.append("-d")
        if self.remove_on_exit:
            args.append("--rm")
        args.extend(["--name", self.name])
        for key, value in self.labels.items():
            args.extend(["--label", f"{key}={value}"])
        for host_port, container_port in self.ports.items():
            args.extend(["-p", f"{host_port}:{container_port}"])
        for key, value in self.env.items():
            args.extend(["-e", f"{key}={value}"])
        if self.entrypoint is not None:
            args.extend(["--entrypoint", self.entrypoint])
        args.append(self.image)
        args.extend(self.command)
        return args


@dataclass(frozen=True)
class ContainerListing:
    """A single ``docker ps`` row: container name plus the requested label value."""

    name: str
    label_value: str | None


class DockerRuntime:
    """Thin async wrapper over the container runtime CLI."""

    def __init__(self, binary: str = "docker", *, env: Mapping[str, str] | None = None) -> None:
        self._binary = binary
        self._env = env

    @property
    def binary(self) -> str:
        return self._binary

    async def is_available(self, *, timeout: float = limits.RUNTIME_PROBE_TIMEOUT_SECONDS) -> bool:
        """Probe the daemon with ``docker info``; any failure means unavailable."""
        try:
            result = await run_exec_capture(self._binary, "info", env=self._env, timeout=timeout)
        except (OSError, TimeoutError) as exc:
            logger.debug("Container runtime probe failed: %s", exc)
            return False
        return result.returncode == 0

    async def run_detached(
        self,
        spec: ContainerSpec,
        *,
        timeout: float = limits.CONTAINER_SPAWN_TIMEOUT_SECONDS,
    ) -> str:
        """Start a detached container and return its short id."""
        args = spec.run_args()
        try:
            result = await run_exec_checked(self._binary, *args, env=self._env, timeout=timeout)
        except ProcessExecutionError as exc:
            raise ContainerRuntimeError(str(exc), command=exc.command) from exc
        return result.stdout_text().strip()[:12]

    async def spawn_attached(self, spec: ContainerSpec) -> asyncio.subprocess.Process:
        """Spawn ``docker run`` in the foreground with piped output.

        Raises ``OSError`` when the runtime binary cannot be executed.
        """
        return await spawn_exec(
            self._binary,
            *spec.run_args(),
            env=self._env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def stop(
        self,
        name: str,
        *,
        grace_seconds: int | None = None,
        timeout: float = limits.CONTAINER_STOP_TIMEOUT_SECONDS,
    ) -> bool:
        """Gracefully stop a container. Returns False when the runtime refused."""
        args = ["stop"]
        if grace_seconds is not None:
            args.extend(["-t", str(grace_seconds)])
        args.append(name)
        return await self._best_effort(args, timeout=timeout)

    async def remove(
        self,
        name: str,
        *,
        timeout: float = limits.CONTAINER_REMOVE_TIMEOUT_SECONDS,
    ) -> bool:
        """Force-remove a container (running or not). Returns False on failure."""
        return await self._best_effort(["rm", "-f", name], timeout=timeout)

    async def list_by_label(
        self,
        label: str,
        *,
        include_stopped: bool = False,
        timeout: float = limits.CONTAINER_LIST_TIMEOUT_SECONDS,
    ) -> list[ContainerListing]:
        """List containers carrying ``label``, with that label's value."""
        args = ["ps"]
        if include_stopped:
            args.append("-a")
        args.extend(["--filter", f"label={label}", "--format", f'{{{{.Names}}}} {{{{.Label "{label}"}}}}'])
        try:
            result = await run_exec_checked(self._binary, *args, env=self._env, timeout=timeout)
        except ProcessExecutionError as exc:
            raise ContainerRuntimeError(str(exc), command=exc.command) from exc

        listings: list[ContainerListing] = []
        for line in result.stdout_text().splitlines():
            name, _, value = line.strip().partition(" ")
            if not name:
                continue
            listings.append(ContainerListing(name=name, label_value=value.strip() or None))
        return listings

    async def _best_effort(self, args: list[str], *, timeout: float) -> bool:
        try:
            await run_exec_checked(self._binary, *args, env=self._env, timeout=timeout)
        except ProcessExecutionError as exc:
            logger.debug("%s %s failed: %s", self._binary, args[0], exc)
            return False
        return True


__all__ = ["ContainerListing", "ContainerSpec", "DockerRuntime"]
