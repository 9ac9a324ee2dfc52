from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from kiln.workers.common import ExitScheduler
from kiln.workers.warm_worker import WarmWorker, create_app


class _ScriptedWorker(WarmWorker):
    def __init__(self, tmp_path) -> None:
        super().__init__(work_dir=tmp_path / "job", agent_config_dir=tmp_path / "agent", environ={})
        self.result = {"status": "completed"}
        self.cancel_calls = 0

    async def run_job(self, job_id: str, branch: str):
        self.busy = True
        self.current_job_id = job_id
        try:
            await asyncio.sleep(0)
            return self.result
        finally:
            self.jobs_run += 1
            self.busy = False
            self.current_job_id = None

    async def cancel(self) -> bool:
        self.cancel_calls += 1
        return self.current_job_id is not None


@pytest.fixture
def exits() -> list[int]:
    return []


@pytest.fixture
def worker(tmp_path) -> _ScriptedWorker:
    worker = _ScriptedWorker(tmp_path)
    worker.ready = True
    return worker


@pytest.fixture
def client(worker, exits):
    scheduler = ExitScheduler(lambda: None, deadline_seconds=60, force_exit=exits.append)
    app = create_app(worker, exit_scheduler=scheduler, run_startup=False)
    with TestClient(app) as test_client:
        yield test_client


def test_health_reports_worker_state(client, worker) -> None:
    worker.jobs_run = 4

    body = client.get("/health").json()

    assert body["ready"] is True
    assert body["busy"] is False
    assert body["jobsRun"] == 4
    assert body["currentJobId"] is None
    assert isinstance(body["uptimeSeconds"], int)


def test_run_completed_job(client, worker) -> None:
    response = client.post("/run", json={"jobId": "j1", "branch": "job/1"})

    assert response.status_code == 200
    assert response.json() == {"status": "completed"}
    assert worker.jobs_run == 1


def test_run_failed_job_returns_500(client, worker) -> None:
    worker.result = {"status": "failed", "error": "Agent exited with code 1"}

    response = client.post("/run", json={"jobId": "j1", "branch": "job/1"})

    assert response.status_code == 500
    assert response.json()["error"] == "Agent exited with code 1"


def test_run_rejects_when_not_ready(client, worker) -> None:
    worker.ready = False

    assert client.post("/run", json={"jobId": "j1", "branch": "b"}).status_code == 503


def test_run_rejects_when_busy(client, worker) -> None:
    worker.busy = True
    worker.current_job_id = "other"

    response = client.post("/run", json={"jobId": "j1", "branch": "b"})

    assert response.status_code == 409
    assert response.json() == {"error": "Busy", "currentJobId": "other"}


@pytest.mark.parametrize("body", [{}, {"jobId": "j1"}, {"branch": "b"}])
def test_run_requires_job_and_branch(client, body) -> None:
    assert client.post("/run", json=body).status_code == 400


def test_run_with_garbage_body_is_bad_request(client) -> None:
    response = client.post(
        "/run", content=b"not json", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400


def test_cancel_without_job(client) -> None:
    assert client.post("/cancel").json() == {"cancelled": False, "currentJobId": None}


def test_shutdown_requests_exit(client, worker, exits) -> None:
    response = client.post("/shutdown")

    assert response.json() == {"status": "shutting_down"}
    assert client.app.state.exit_scheduler.requested
    assert worker.cancel_calls >= 1
    assert exits == []


async def test_startup_requires_repo_url(tmp_path) -> None:
    worker = WarmWorker(work_dir=tmp_path / "job", environ={})

    with pytest.raises(RuntimeError, match="REPO_URL"):
        await worker.startup()


async def test_system_prompt_combines_soul_and_agent(tmp_path) -> None:
    config_dir = tmp_path / "job" / "config"
    config_dir.mkdir(parents=True)
    (config_dir / "SOUL.md").write_text("soul")
    (config_dir / "AGENT.md").write_text("agent at {{datetime}}")
    worker = WarmWorker(work_dir=tmp_path / "job", environ={})

    prompt = await worker.build_system_prompt()

    assert prompt.startswith("soul\n\nagent at ")
    assert "{{datetime}}" not in prompt


def test_agent_command_uses_provider_and_model(tmp_path) -> None:
    worker = WarmWorker(
        work_dir=tmp_path, environ={"LLM_PROVIDER": "openai", "LLM_MODEL": "gpt-x"}
    )

    command = worker.agent_command("do it", tmp_path / "logs")

    assert command == [
        "--provider", "openai", "--model", "gpt-x",
        "-p", "do it", "--session-dir", str(tmp_path / "logs"),
    ]


def test_agent_command_defaults_to_anthropic(tmp_path) -> None:
    command = WarmWorker(work_dir=tmp_path, environ={}).agent_command("p", tmp_path)

    assert command[:2] == ["--provider", "anthropic"]
    assert "--model" not in command
