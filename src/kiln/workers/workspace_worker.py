"""Workspace worker: shell, file I/O and package installs under ``/workspace``.

State persists between calls. The process exits on its own after
``IDLE_TIMEOUT`` seconds without a request.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import aiofiles.os
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kiln.core import limits
from kiln.core.adapters.process import spawn_exec
from kiln.workers.common import ExitScheduler, export_secrets, kill_process_tree, read_json_body

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, MutableMapping

logger = logging.getLogger(__name__)

WORKSPACE_DIR = Path("/workspace")
DEFAULT_IDLE_TIMEOUT_SECONDS = 1800
MAX_OUTPUT_CHARS = 100_000
MAX_FILE_READ_CHARS = 500_000
DEFAULT_EXEC_TIMEOUT_MS = 300_000
MAX_EXEC_TIMEOUT_MS = 600_000
INSTALL_TIMEOUT_MS = 120_000
TIMEOUT_MARKER = "\n[timeout: command killed]"
TRUNCATED_MARKER = "\n[truncated]"


@dataclass(slots=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    def to_dict(self) -> dict[str, Any]:
        return {"exitCode": self.exit_code, "stdout": self.stdout, "stderr": self.stderr}


class PathOutsideWorkspace(ValueError):
    pass


class Workspace:
    """The ``/workspace`` directory plus an idle timer."""

    def __init__(
        self,
        *,
        root: Path = WORKSPACE_DIR,
        environ: MutableMapping[str, str] | None = None,
        idle_timeout_seconds: float | None = None,
        on_idle: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.root = root
        self.environ = os.environ if environ is None else environ
        if idle_timeout_seconds is None:
            raw = self.environ.get("IDLE_TIMEOUT", "")
            idle_timeout_seconds = int(raw) if raw.isdigit() else DEFAULT_IDLE_TIMEOUT_SECONDS
        self.idle_timeout_seconds = idle_timeout_seconds
        self._on_idle = on_idle
        self._clock = clock
        self.started_at = clock()
        self.ready = False
        self._idle_handle: asyncio.TimerHandle | None = None

    def health(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "uptime": int(self._clock() - self.started_at),
            "cwd": str(self.root),
        }

    async def startup(self) -> None:
        export_secrets(self.environ)
        await aiofiles.os.makedirs(self.root, exist_ok=True)
        self.ready = True
        self.touch()
        logger.info("Ready")

    def touch(self) -> None:
        """Restart the idle timer."""
        self.cancel_idle_timer()
        if self._on_idle is None:
            return
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self.idle_timeout_seconds, self._idle_expired)

    def _idle_expired(self) -> None:
        logger.info("Idle timeout (%ss) reached, shutting down", self.idle_timeout_seconds)
        self._idle_handle = None
        if self._on_idle is not None:
            self._on_idle()

    def cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def resolve(self, path: str) -> Path:
        """Resolve ``path`` against the workspace root, refusing to leave it."""
        resolved = (self.root / path).resolve()
        root = self.root.resolve()
        if resolved != root and root not in resolved.parents:
            raise PathOutsideWorkspace(path)
        return resolved

    async def exec(
        self,
        command: str | None,
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
    ) -> ExecResult:
        self.touch()
        if not command:
            return ExecResult(1, "", "No command provided")

        exec_cwd = (self.root / cwd).resolve() if cwd else self.root
        timeout = min(timeout_ms or DEFAULT_EXEC_TIMEOUT_MS, MAX_EXEC_TIMEOUT_MS) / 1000
        try:
            process = await spawn_exec(
                "bash",
                "-c",
                command,
                env=self.environ,
                cwd=exec_cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return ExecResult(1, "", str(exc))

        assert process.stdout is not None
        assert process.stderr is not None
        readers = asyncio.gather(
            _read_capped(process.stdout, MAX_OUTPUT_CHARS),
            _read_capped(process.stderr, MAX_OUTPUT_CHARS),
            process.wait(),
        )
        killed = False
        try:
            stdout, stderr, returncode = await asyncio.wait_for(asyncio.shield(readers), timeout)
        except TimeoutError:
            killed = True
            await kill_process_tree(process.pid)
            stdout, stderr, returncode = await readers

        if killed:
            stderr += TIMEOUT_MARKER
        return ExecResult(returncode or 0, stdout, stderr)

    async def read_file(self, path: str | None) -> dict[str, Any]:
        self.touch()
        if not path:
            return {"error": "No path provided"}
        try:
            resolved = self.resolve(path)
        except PathOutsideWorkspace:
            return {"error": "Path outside workspace"}
        if not await aiofiles.os.path.exists(resolved):
            return {"error": f"File not found: {path}"}
        if await aiofiles.os.path.isdir(resolved):
            return {"error": f"Path is a directory: {path}"}

        try:
            size = (await aiofiles.os.stat(resolved)).st_size
            async with aiofiles.open(resolved, encoding="utf-8", errors="replace") as f:
                content = await f.read(MAX_FILE_READ_CHARS + 1)
        except OSError as exc:
            return {"error": str(exc)}
        if len(content) > MAX_FILE_READ_CHARS:
            content = content[:MAX_FILE_READ_CHARS] + TRUNCATED_MARKER
        return {"content": content, "size": size}

    async def write_file(self, path: str | None, content: str | None) -> dict[str, Any]:
        self.touch()
        if not path:
            return {"error": "No path provided"}
        if content is None:
            return {"error": "No content provided"}
        try:
            resolved = self.resolve(path)
        except PathOutsideWorkspace:
            return {"error": "Path outside workspace"}

        try:
            await aiofiles.os.makedirs(resolved.parent, exist_ok=True)
            async with aiofiles.open(resolved, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as exc:
            return {"error": str(exc)}
        return {"success": True, "path": path}

    async def install(self, packages: list[str] | None, kind: str | None) -> ExecResult:
        self.touch()
        if not packages:
            return ExecResult(1, "", "No packages provided")
        package_list = " ".join(packages)
        if kind == "apt":
            command = f"apt-get update -qq && apt-get install -y -qq {package_list}"
        else:
            command = f"cd {self.root} && npm install {package_list}"
        return await self.exec(command, timeout_ms=INSTALL_TIMEOUT_MS)


async def _read_capped(stream: asyncio.StreamReader, cap: int) -> str:
    """Read a stream to EOF, keeping only what arrives before ``cap`` chars."""
    chunks: list[str] = []
    kept = 0
    while chunk := await stream.read(8192):
        if kept < cap:
            text = chunk.decode("utf-8", "replace")
            chunks.append(text)
            kept += len(text)
    return "".join(chunks)


def create_app(
    workspace: Workspace | None = None,
    *,
    exit_scheduler: ExitScheduler | None = None,
    run_startup: bool = True,
) -> FastAPI:
    exit_scheduler = exit_scheduler or ExitScheduler()
    workspace = workspace or Workspace(on_idle=exit_scheduler)

    async def _startup() -> None:
        try:
            await workspace.startup()
        except Exception:  # quality-allow-broad-except
            logger.exception("Startup failed")
            exit_scheduler(1)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        startup_task = (
            asyncio.create_task(_startup(), name="workspace-startup") if run_startup else None
        )
        try:
            yield
        finally:
            if startup_task is not None and not startup_task.done():
                startup_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await startup_task
            workspace.cancel_idle_timer()
            exit_scheduler.cancel_deadline()

    app = FastAPI(title="kiln workspace worker", lifespan=lifespan)
    app.state.workspace = workspace
    app.state.exit_scheduler = exit_scheduler

    def _not_ready() -> JSONResponse:
        return JSONResponse({"error": "Not ready"}, status_code=503)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return workspace.health()

    @app.post("/exec")
    async def exec_command(request: Request) -> JSONResponse:
        if not workspace.ready:
            return _not_ready()
        body = await read_json_body(request)
        result = await workspace.exec(
            body.get("command"), cwd=body.get("cwd"), timeout_ms=body.get("timeout")
        )
        return JSONResponse(result.to_dict())

    @app.post("/read-file")
    async def read_file(request: Request) -> JSONResponse:
        if not workspace.ready:
            return _not_ready()
        body = await read_json_body(request)
        result = await workspace.read_file(body.get("path"))
        return JSONResponse(result, status_code=400 if "error" in result else 200)

    @app.post("/write-file")
    async def write_file(request: Request) -> JSONResponse:
        if not workspace.ready:
            return _not_ready()
        body = await read_json_body(request)
        result = await workspace.write_file(body.get("path"), body.get("content"))
        return JSONResponse(result, status_code=400 if "error" in result else 200)

    @app.post("/install")
    async def install(request: Request) -> JSONResponse:
        if not workspace.ready:
            return _not_ready()
        body = await read_json_body(request)
        result = await workspace.install(body.get("packages"), body.get("type"))
        return JSONResponse(result.to_dict())

    @app.post("/shutdown")
    async def shutdown() -> dict[str, str]:
        logger.info("Shutdown requested")
        workspace.cancel_idle_timer()
        exit_scheduler()
        return {"status": "shutting_down"}

    return app


def main() -> int:
    from kiln.debug_log import setup_logging
    from kiln.workers.common import serve

    setup_logging()
    exit_scheduler = ExitScheduler()
    app = create_app(exit_scheduler=exit_scheduler)
    return serve(app, exit_scheduler, port=limits.WORKER_CONTAINER_PORT)


if __name__ == "__main__":
    raise SystemExit(main())
