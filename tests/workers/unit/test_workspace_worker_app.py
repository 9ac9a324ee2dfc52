from __future__ import annotations

import asyncio
import shutil

import pytest
from fastapi.testclient import TestClient

from kiln.workers.common import ExitScheduler, export_secrets
from kiln.workers.workspace_worker import (
    MAX_FILE_READ_CHARS,
    TIMEOUT_MARKER,
    Workspace,
    create_app,
)

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")


@pytest.fixture
def exits() -> list[int]:
    return []


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    return Workspace(root=tmp_path / "workspace", environ={"PATH": "/usr/bin:/bin"})


@pytest.fixture
def client(workspace, exits):
    scheduler = ExitScheduler(lambda: None, deadline_seconds=60, force_exit=exits.append)
    app = create_app(workspace, exit_scheduler=scheduler, run_startup=False)
    with TestClient(app) as test_client:
        test_client.portal.call(workspace.startup)
        yield test_client


def test_export_secrets_flattens_json() -> None:
    environ = {"SECRETS": '{"GH_TOKEN": "t"}', "LLM_SECRETS": "not json"}

    exported = export_secrets(environ)

    assert exported == ["GH_TOKEN"]
    assert environ["GH_TOKEN"] == "t"


def test_health(client, workspace) -> None:
    body = client.get("/health").json()

    assert body["ready"] is True
    assert body["cwd"] == str(workspace.root)


def test_requests_rejected_before_ready(tmp_path, exits) -> None:
    scheduler = ExitScheduler(lambda: None, force_exit=exits.append)
    app = create_app(Workspace(root=tmp_path, environ={}), exit_scheduler=scheduler, run_startup=False)
    with TestClient(app) as client:
        assert client.post("/exec", json={"command": "true"}).status_code == 503


def test_write_then_read_file(client) -> None:
    written = client.post("/write-file", json={"path": "src/app.txt", "content": "hello"})
    read = client.post("/read-file", json={"path": "src/app.txt"})

    assert written.json() == {"success": True, "path": "src/app.txt"}
    assert read.json() == {"content": "hello", "size": 5}


@pytest.mark.parametrize("path", ["../etc/passwd", "/etc/passwd", "a/../../escape"])
def test_paths_outside_workspace_are_rejected(client, path) -> None:
    response = client.post("/read-file", json={"path": path})

    assert response.status_code == 400
    assert response.json() == {"error": "Path outside workspace"}
    assert client.post("/write-file", json={"path": path, "content": "x"}).status_code == 400


def test_read_missing_file_and_directory(client, workspace) -> None:
    (workspace.root / "dir").mkdir()

    assert client.post("/read-file", json={"path": "nope"}).json() == {
        "error": "File not found: nope"
    }
    assert client.post("/read-file", json={"path": "dir"}).json() == {
        "error": "Path is a directory: dir"
    }
    assert client.post("/read-file", json={}).json() == {"error": "No path provided"}


def test_write_requires_content(client) -> None:
    response = client.post("/write-file", json={"path": "a.txt"})

    assert response.status_code == 400
    assert response.json() == {"error": "No content provided"}


def test_large_files_are_truncated(client, workspace) -> None:
    (workspace.root / "big.txt").write_text("a" * (MAX_FILE_READ_CHARS + 10))

    body = client.post("/read-file", json={"path": "big.txt"}).json()

    assert body["content"].endswith("\n[truncated]")
    assert body["size"] == MAX_FILE_READ_CHARS + 10


def test_exec_without_command(client) -> None:
    assert client.post("/exec", json={}).json() == {
        "exitCode": 1,
        "stdout": "",
        "stderr": "No command provided",
    }


@needs_bash
def test_exec_runs_in_workspace(client, workspace) -> None:
    body = client.post("/exec", json={"command": "pwd; echo oops >&2; exit 4"}).json()

    assert body["exitCode"] == 4
    assert body["stdout"].strip() == str(workspace.root.resolve())
    assert body["stderr"].strip() == "oops"


@needs_bash
def test_exec_timeout_kills_command(client) -> None:
    body = client.post("/exec", json={"command": "sleep 30", "timeout": 200}).json()

    assert body["stderr"].endswith(TIMEOUT_MARKER)


def test_install_requires_packages(client) -> None:
    assert client.post("/install", json={"packages": [], "type": "npm"}).json()["stderr"] == (
        "No packages provided"
    )


def test_shutdown_requests_exit(client) -> None:
    assert client.post("/shutdown").json() == {"status": "shutting_down"}
    assert client.app.state.exit_scheduler.requested


async def test_idle_timer_fires_on_idle(tmp_path) -> None:
    fired: list[bool] = []
    workspace = Workspace(
        root=tmp_path, environ={}, idle_timeout_seconds=0.01, on_idle=lambda: fired.append(True)
    )

    await workspace.startup()
    await asyncio.sleep(0.05)

    assert fired == [True]


async def test_activity_resets_idle_timer(tmp_path) -> None:
    fired: list[bool] = []
    workspace = Workspace(
        root=tmp_path, environ={}, idle_timeout_seconds=0.05, on_idle=lambda: fired.append(True)
    )
    await workspace.startup()

    for _ in range(3):
        await asyncio.sleep(0.03)
        await workspace.read_file("missing")
    assert fired == []

    workspace.cancel_idle_timer()
