"""Warm worker: a long-lived container that runs agent jobs on request.

Startup clones the repository once; each ``POST /run`` then fetches the job
branch, runs the agent CLI, commits, pushes, opens a PR and resets the
checkout for the next job.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import aiofiles.os
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kiln.core import limits
from kiln.core.adapters.process import ProcessExecutionError, run_exec_checked, spawn_exec
from kiln.workers.common import ExitScheduler, export_secrets, kill_process_tree, read_json_body

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, MutableMapping

logger = logging.getLogger(__name__)

WORK_DIR = Path("/job")
AGENT_CONFIG_DIR = Path("/root/.pi/agent")
DEFAULT_PROVIDER = "anthropic"
_GIT_TIMEOUT_SECONDS = 120.0
_CLONE_TIMEOUT_SECONDS = 300.0
_NETWORK_TIMEOUT_SECONDS = 60.0
_PR_TIMEOUT_SECONDS = 30.0
_GH_USER_QUERY = "{name: .name, login: .login, email: .email, id: .id}"


class WarmWorker:
    """Job execution state for one warm container. One job at a time."""

    def __init__(
        self,
        *,
        work_dir: Path = WORK_DIR,
        agent_config_dir: Path = AGENT_CONFIG_DIR,
        environ: MutableMapping[str, str] | None = None,
        agent_binary: str = "pi",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.work_dir = work_dir
        self.agent_config_dir = agent_config_dir
        self.environ = os.environ if environ is None else environ
        self.agent_binary = agent_binary
        self._clock = clock
        self.started_at = clock()
        self.ready = False
        self.busy = False
        self.jobs_run = 0
        self.current_job_id: str | None = None
        self._process: asyncio.subprocess.Process | None = None

    def health(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "busy": self.busy,
            "jobsRun": self.jobs_run,
            "currentJobId": self.current_job_id,
            "uptimeSeconds": int(self._clock() - self.started_at),
        }

    async def _exec(
        self,
        executable: str,
        *args: str,
        cwd: Path | None = None,
        timeout: float = _GIT_TIMEOUT_SECONDS,
    ) -> str:
        result = await run_exec_checked(
            executable, *args, env=self.environ, cwd=cwd, timeout=timeout
        )
        return result.stdout_text().strip()

    async def _git(self, *args: str, timeout: float = _GIT_TIMEOUT_SECONDS) -> str:
        return await self._exec("git", *args, cwd=self.work_dir, timeout=timeout)

    async def startup(self) -> None:
        """Prepare the checkout. Raises on anything that leaves the worker unusable."""
        repo_url = self.environ.get("REPO_URL")
        if not repo_url:
            msg = "REPO_URL not set"
            raise RuntimeError(msg)

        export_secrets(self.environ)

        logger.info("Setting up git identity...")
        await self._exec("gh", "auth", "setup-git")
        user = json.loads(await self._exec("gh", "api", "user", "-q", _GH_USER_QUERY))
        name = user.get("name") or user.get("login") or "kiln"
        email = user.get("email") or f"{user.get('id')}+{user.get('login')}@users.noreply.github.com"
        await self._exec("git", "config", "--global", "user.name", name)
        await self._exec("git", "config", "--global", "user.email", email)

        logger.info("Cloning repository...")
        await self._exec(
            "git", "clone", "--depth", "50", repo_url, str(self.work_dir),
            timeout=_CLONE_TIMEOUT_SECONDS,
        )
        await aiofiles.os.makedirs(self.work_dir / "tmp", exist_ok=True)
        await self._write_models_config()

        self.ready = True
        logger.info("Ready for jobs")

    async def _write_models_config(self) -> None:
        provider = self.environ.get("LLM_PROVIDER") or DEFAULT_PROVIDER
        base_url = self.environ.get("OPENAI_BASE_URL")
        models_path = self.agent_config_dir / "models.json"
        if provider == "custom" and base_url:
            self.environ.setdefault("CUSTOM_API_KEY", "not-needed")
            config = {
                "providers": {
                    "custom": {
                        "baseUrl": base_url,
                        "api": "openai-completions",
                        "apiKey": "CUSTOM_API_KEY",
                        "models": [{"id": self.environ.get("LLM_MODEL") or "default"}],
                    }
                }
            }
            await aiofiles.os.makedirs(self.agent_config_dir, exist_ok=True)
            async with aiofiles.open(models_path, "w") as f:
                await f.write(json.dumps(config, indent=2))

        # A repository-level models.json wins over the generated one.
        repo_models = self.work_dir / ".pi" / "agent" / "models.json"
        if await aiofiles.os.path.exists(repo_models):
            await aiofiles.os.makedirs(self.agent_config_dir, exist_ok=True)
            async with aiofiles.open(repo_models, "rb") as src:
                data = await src.read()
            async with aiofiles.open(models_path, "wb") as dst:
                await dst.write(data)

    async def _read_optional(self, path: Path) -> str:
        if not await aiofiles.os.path.exists(path):
            return ""
        async with aiofiles.open(path, encoding="utf-8") as f:
            return await f.read()

    async def build_system_prompt(self) -> str:
        """``config/SOUL.md`` + ``config/AGENT.md`` with ``{{datetime}}`` filled in."""
        parts = [
            text
            for text in (
                await self._read_optional(self.work_dir / "config" / "SOUL.md"),
                await self._read_optional(self.work_dir / "config" / "AGENT.md"),
            )
            if text
        ]
        content = "\n\n".join(parts)
        return content.replace("{{datetime}}", datetime.now(UTC).isoformat())

    def agent_command(self, prompt: str, log_dir: Path) -> list[str]:
        args = ["--provider", self.environ.get("LLM_PROVIDER") or DEFAULT_PROVIDER]
        if model := self.environ.get("LLM_MODEL"):
            args += ["--model", model]
        return [*args, "-p", prompt, "--session-dir", str(log_dir)]

    async def run_job(self, job_id: str, branch: str) -> dict[str, Any]:
        """Run one job to completion. Never raises; failures come back as a result."""
        self.busy = True
        self.current_job_id = job_id
        try:
            logger.info("Fetching branch %s...", branch)
            await self._git("fetch", "origin", f"{branch}:{branch}", timeout=_NETWORK_TIMEOUT_SECONDS)
            await self._git("checkout", branch)

            log_dir = self.work_dir / "logs" / job_id
            await aiofiles.os.makedirs(log_dir, exist_ok=True)
            await aiofiles.os.makedirs(self.work_dir / ".pi", exist_ok=True)
            async with aiofiles.open(self.work_dir / ".pi" / "SYSTEM.md", "w", encoding="utf-8") as f:
                await f.write(await self.build_system_prompt())

            job_prompt = await self._read_optional(log_dir / "job.md")
            prompt = f"\n\n# Your Job\n\n{job_prompt}"

            logger.info("Running agent for job %s...", job_id)
            exit_code = await self._run_agent(prompt, log_dir)
            if exit_code != 0:
                msg = f"Agent exited with code {exit_code}"
                raise RuntimeError(msg)

            await self._publish(job_id, log_dir)
            return {"status": "completed"}
        except (ProcessExecutionError, RuntimeError, OSError) as exc:
            logger.error("Job %s failed: %s", job_id, exc)
            return {"status": "failed", "error": str(exc)}
        finally:
            self.jobs_run += 1
            await self.reset_workspace()
            self.busy = False
            self.current_job_id = None

    async def _run_agent(self, prompt: str, log_dir: Path) -> int:
        try:
            process = await spawn_exec(
                self.agent_binary,
                *self.agent_command(prompt, log_dir),
                env=self.environ,
                cwd=self.work_dir,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.error("Agent spawn error: %s", exc)
            return 1
        self._process = process
        try:
            return await process.wait()
        finally:
            self._process = None

    async def _publish(self, job_id: str, log_dir: Path) -> None:
        logger.info("Committing results...")
        try:
            await self._git("add", "-A")
            await self._git("add", "-f", str(log_dir))
            await self._git("commit", "-m", f"kiln: job {job_id}")
            await self._git("push", "origin", timeout=_NETWORK_TIMEOUT_SECONDS)
        except ProcessExecutionError as exc:
            logger.warning("Git commit/push warning: %s", exc)

        logger.info("Creating PR...")
        try:
            await self._exec(
                "gh", "pr", "create",
                "--title", f"kiln: job {job_id}",
                "--body", "Automated job",
                "--base", "main",
                cwd=self.work_dir,
                timeout=_PR_TIMEOUT_SECONDS,
            )
        except ProcessExecutionError as exc:
            logger.warning("PR creation warning: %s", exc)

    async def reset_workspace(self) -> None:
        """Back to a clean ``main`` so the next job starts from scratch."""
        try:
            current = await self._git("rev-parse", "--abbrev-ref", "HEAD")
            if current != "main":
                await self._git("checkout", "main")
                await self._git("branch", "-D", current)
            await self._git("clean", "-fd")
            await self._git("reset", "--hard", "origin/main")
        except (ProcessExecutionError, OSError) as exc:
            logger.warning("Reset warning: %s", exc)

    async def cancel(self) -> bool:
        """Kill the running agent process tree. The worker itself stays up."""
        process = self._process
        if process is None or process.returncode is not None:
            return False
        logger.info("Cancelling job %s...", self.current_job_id)
        return await kill_process_tree(process.pid)


def create_app(
    worker: WarmWorker | None = None,
    *,
    exit_scheduler: ExitScheduler | None = None,
    run_startup: bool = True,
) -> FastAPI:
    worker = worker or WarmWorker()
    exit_scheduler = exit_scheduler or ExitScheduler()

    async def _startup() -> None:
        try:
            await worker.startup()
        except Exception:  # quality-allow-broad-except
            logger.exception("Startup failed")
            exit_scheduler(1)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        startup_task = (
            asyncio.create_task(_startup(), name="warm-worker-startup") if run_startup else None
        )
        try:
            yield
        finally:
            if startup_task is not None and not startup_task.done():
                startup_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await startup_task
            await worker.cancel()
            exit_scheduler.cancel_deadline()

    app = FastAPI(title="kiln warm worker", lifespan=lifespan)
    app.state.worker = worker
    app.state.exit_scheduler = exit_scheduler

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return worker.health()

    @app.post("/run")
    async def run(request: Request) -> JSONResponse:
        body = await read_json_body(request)
        if not worker.ready:
            return JSONResponse({"error": "Not ready"}, status_code=503)
        if worker.busy:
            return JSONResponse(
                {"error": "Busy", "currentJobId": worker.current_job_id}, status_code=409
            )
        job_id = body.get("jobId")
        branch = body.get("branch")
        if not job_id or not branch:
            return JSONResponse({"error": "jobId and branch required"}, status_code=400)

        logger.info("Received job: %s (branch: %s)", job_id, branch)
        result = await worker.run_job(str(job_id), str(branch))
        return JSONResponse(result, status_code=200 if result["status"] == "completed" else 500)

    @app.post("/cancel")
    async def cancel() -> dict[str, Any]:
        current_job_id = worker.current_job_id
        cancelled = await worker.cancel()
        return {"cancelled": cancelled, "currentJobId": current_job_id}

    @app.post("/shutdown")
    async def shutdown() -> dict[str, str]:
        logger.info("Shutdown requested")
        await worker.cancel()
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
