from __future__ import annotations

from kiln.core.execution.router import ExecutionRouter
from kiln.core.models.enums import ExecutionMode


def _router(make_config, runtime, clock, *, version: str | None = "1.4.0", **execution):
    config = make_config(execution={"image_override": None, **execution})
    return ExecutionRouter(
        config.execution, runtime, clock=clock, version_getter=lambda: version
    )


async def test_local_mode_never_probes(make_config, runtime, clock) -> None:
    router = _router(make_config, runtime, clock, mode="local")

    assert await router.resolve_mode() is ExecutionMode.LOCAL
    assert runtime.probes == 0


async def test_github_mode_never_probes(make_config, runtime, clock) -> None:
    router = _router(make_config, runtime, clock, mode="github")

    assert await router.resolve_mode() is ExecutionMode.GITHUB
    assert not await router.is_local_execution_enabled()
    assert runtime.probes == 0


async def test_auto_mode_caches_probe_within_ttl(make_config, runtime, clock) -> None:
    router = _router(make_config, runtime, clock, mode="auto", probe_ttl_seconds=30)

    assert await router.resolve_mode() is ExecutionMode.LOCAL
    runtime.available = False
    clock.advance(29)
    assert await router.resolve_mode() is ExecutionMode.LOCAL
    assert runtime.probes == 1


async def test_auto_mode_reprobes_after_ttl(make_config, runtime, clock) -> None:
    router = _router(make_config, runtime, clock, mode="auto", probe_ttl_seconds=30)
    runtime.available = False

    assert await router.resolve_mode() is ExecutionMode.GITHUB
    runtime.available = True
    clock.advance(30)
    assert await router.resolve_mode() is ExecutionMode.LOCAL
    assert runtime.probes == 2


def test_image_override_wins(make_config, runtime, clock) -> None:
    router = _router(make_config, runtime, clock, image_override="mine:dev")

    assert router.resolve_job_image() == "mine:dev"


def test_image_pinned_to_version_and_memoized(make_config, runtime, clock) -> None:
    calls: list[int] = []

    def version() -> str:
        calls.append(1)
        return "2.0.1"

    config = make_config(execution={"image_override": None})
    router = ExecutionRouter(config.execution, runtime, clock=clock, version_getter=version)

    assert router.resolve_job_image() == "kiln/agent-job:job-2.0.1"
    assert router.resolve_job_image() == "kiln/agent-job:job-2.0.1"
    assert len(calls) == 1


def test_image_falls_back_to_latest(make_config, runtime, clock) -> None:
    router = _router(make_config, runtime, clock, version=None)

    assert router.resolve_job_image() == "kiln/agent-job:job-latest"
