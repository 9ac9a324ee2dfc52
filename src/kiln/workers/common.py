"""Pieces shared by the warm and workspace workers."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import TYPE_CHECKING, Any

import psutil
from fastapi import Request

if TYPE_CHECKING:
    from collections.abc import Callable, MutableMapping

logger = logging.getLogger(__name__)

SECRET_ENV_VARS = ("SECRETS", "LLM_SECRETS")
PROCESS_KILL_GRACE_SECONDS = 5.0
SHUTDOWN_EXIT_DEADLINE_SECONDS = 5.0


def export_secrets(environ: MutableMapping[str, str] | None = None) -> list[str]:
    """Flatten the ``SECRETS``/``LLM_SECRETS`` JSON objects into ``environ``.

    Returns the exported variable names. Malformed JSON is logged and skipped.
    """
    target = os.environ if environ is None else environ
    exported: list[str] = []
    for var in SECRET_ENV_VARS:
        raw = target.get(var)
        if not raw:
            continue
        try:
            values = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse %s: %s", var, exc)
            continue
        if not isinstance(values, dict):
            logger.warning("Ignoring %s: expected a JSON object", var)
            continue
        for key, value in values.items():
            target[str(key)] = str(value)
            exported.append(str(key))
    return exported


async def read_json_body(request: Request) -> dict[str, Any]:
    """Request body as a dict; anything unparseable reads as ``{}``."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _terminate_tree(pid: int, grace_seconds: float) -> bool:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False
    try:
        procs = [*parent.children(recursive=True), parent]
    except psutil.NoSuchProcess:
        procs = [parent]

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
    _, alive = psutil.wait_procs(procs, timeout=grace_seconds)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    return True


async def kill_process_tree(pid: int, *, grace_seconds: float = PROCESS_KILL_GRACE_SECONDS) -> bool:
    """SIGTERM ``pid`` and its descendants, SIGKILL whatever survives the grace period."""
    return await asyncio.to_thread(_terminate_tree, pid, grace_seconds)


class ExitScheduler:
    """Asks the serving loop to exit, with a hard deadline behind it."""

    def __init__(
        self,
        request_exit: Callable[[], None] | None = None,
        *,
        deadline_seconds: float = SHUTDOWN_EXIT_DEADLINE_SECONDS,
        force_exit: Callable[[int], None] = os._exit,
    ) -> None:
        self._request_exit = request_exit
        self._deadline_seconds = deadline_seconds
        self._force_exit = force_exit
        self._deadline_handle: asyncio.TimerHandle | None = None
        self.requested = False
        self.exit_code = 0

    def bind(self, request_exit: Callable[[], None]) -> None:
        self._request_exit = request_exit

    def __call__(self, exit_code: int = 0) -> None:
        if self.requested:
            return
        self.requested = True
        self.exit_code = exit_code
        if self._request_exit is not None:
            self._request_exit()
        loop = asyncio.get_running_loop()
        self._deadline_handle = loop.call_later(self._deadline_seconds, self._force_exit, exit_code)

    def cancel_deadline(self) -> None:
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None


def serve(app: Any, exit_scheduler: ExitScheduler, *, port: int) -> int:
    """Run ``app`` under uvicorn until it exits or ``exit_scheduler`` fires.

    Returns the process exit code.
    """
    import uvicorn

    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_config=None))

    def _request_exit() -> None:
        server.should_exit = True

    exit_scheduler.bind(_request_exit)
    server.run()
    exit_scheduler.cancel_deadline()
    return exit_scheduler.exit_code
