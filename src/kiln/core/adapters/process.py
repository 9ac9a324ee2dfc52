"""Shared subprocess adapter for container runtime calls and worker commands."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kiln.core.instrumentation import increment_counter, timed_operation

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path


@dataclass(frozen=True)
class ProcessResult:
    """Captured result of a subprocess execution."""

    returncode: int
    stdout: bytes
    stderr: bytes

    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ProcessExecutionError(RuntimeError):
    """Structured process failure with machine-readable code and command context."""

    code: str
    command: tuple[str, ...]
    returncode: int | None = None
    timed_out: bool = False
    stderr: str | None = None
    detail: str | None = None

    def __str__(self) -> str:
        parts = [f"[{self.code}] {' '.join(self.command)}"]
        if self.returncode is not None:
            parts.append(f"(rc={self.returncode})")
        if self.timed_out:
            parts.append("(timed out)")
        message = " ".join(parts)
        detail = self.detail or self.stderr
        return f"{message}: {detail}" if detail else message


async def spawn_exec(
    executable: str,
    *args: str,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    stdin: int | None = None,
    stdout: int | None = None,
    stderr: int | None = None,
) -> asyncio.subprocess.Process:
    """Spawn a subprocess using ``create_subprocess_exec`` (no shell interpretation)."""
    return await asyncio.create_subprocess_exec(
        executable,
        *args,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
    )


async def _communicate(
    process: asyncio.subprocess.Process,
    *,
    timeout: float | None = None,
) -> tuple[bytes, bytes]:
    try:
        if timeout is None:
            stdout, stderr = await process.communicate()
        else:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(ProcessLookupError):
            await process.communicate()
        raise

    return stdout or b"", stderr or b""


async def run_exec_capture(
    executable: str,
    *args: str,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """Run an exec subprocess and capture stdout/stderr.

    Raises ``TimeoutError`` (after killing the child) or ``OSError`` when the
    executable cannot be started.
    """
    fields = {"command": executable, "subcommand": args[0] if args else ""}
    increment_counter("process.exec.calls", fields=fields)
    with timed_operation("process.exec.duration_ms", fields=fields):
        process = await spawn_exec(
            executable,
            *args,
            env=env,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await _communicate(process, timeout=timeout)
        except TimeoutError:
            increment_counter("process.exec.timeouts", fields=fields)
            raise

    result = ProcessResult(
        returncode=process.returncode if process.returncode is not None else 1,
        stdout=stdout,
        stderr=stderr,
    )
    if result.returncode != 0:
        increment_counter("process.exec.nonzero_returncode", fields=fields)
    return result


async def run_exec_checked(
    executable: str,
    *args: str,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """Run exec subprocess and raise a structured error when execution fails."""
    command = (executable, *args)
    try:
        result = await run_exec_capture(executable, *args, env=env, cwd=cwd, timeout=timeout)
    except TimeoutError as exc:
        raise ProcessExecutionError(
            code="PROCESS_TIMEOUT",
            command=command,
            timed_out=True,
            detail="process execution exceeded timeout",
        ) from exc
    except OSError as exc:
        raise ProcessExecutionError(
            code="PROCESS_OS_ERROR", command=command, detail=str(exc)
        ) from exc

    if result.returncode != 0:
        stderr_text = result.stderr_text().strip()
        raise ProcessExecutionError(
            code="PROCESS_NONZERO_EXIT",
            command=command,
            returncode=result.returncode,
            stderr=stderr_text or None,
            detail=stderr_text or result.stdout_text().strip() or None,
        )
    return result


__all__ = [
    "ProcessExecutionError",
    "ProcessResult",
    "run_exec_capture",
    "run_exec_checked",
    "spawn_exec",
]
