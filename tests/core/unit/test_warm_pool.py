from __future__ import annotations

import asyncio

import pytest

from kiln.core.adapters.control import ControlResponse
from kiln.core.errors import NoAvailableWorkerError, WorkerUnreachableError
from kiln.core.execution.local_runner import LocalRunner
from kiln.core.execution.warm_pool import WARM_WORKER_MODULE, WarmPool
from kiln.core.models.enums import JobStatus, RunnerType, WorkerStatus
from kiln.utils.background_tasks import BackgroundTasks
from tests.helpers.wait import wait_until

JOB_A = "aaaaaaaa-0000-4000-8000-000000000001"
JOB_B = "bbbbbbbb-0000-4000-8000-000000000002"


@pytest.fixture
def tasks() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def make_pool(config, runtime, control, router, finalizer, clock, tasks):
    def _make(pool_config=None) -> WarmPool:
        cfg = pool_config or config
        fallback = LocalRunner(cfg, runtime, router, finalizer, environ={}, background_tasks=tasks)
        pool = WarmPool(
            cfg,
            runtime,
            control,
            router,
            finalizer,
            fallback,
            environ={},
            background_tasks=tasks,
            clock=clock,
        )
        return pool

    return _make


async def _settle(tasks: BackgroundTasks) -> None:
    await tasks.wait(timeout=2.0)


async def test_init_spawns_every_slot_on_consecutive_ports(make_pool, runtime) -> None:
    pool = make_pool()

    await pool.init()

    assert [spec.name for spec in runtime.detached] == ["kiln-warm-0", "kiln-warm-1"]
    assert [dict(spec.ports) for spec in runtime.detached] == [{9100: 8080}, {9101: 8080}]
    spec = runtime.detached[0]
    assert spec.labels == {"kiln-warm": "true"}
    assert spec.entrypoint == "python"
    assert tuple(spec.command) == ("-m", WARM_WORKER_MODULE)
    assert [w.status for w in pool.workers] == [WorkerStatus.READY, WorkerStatus.READY]
    await pool.shutdown()


async def test_init_is_idempotent(make_pool, runtime) -> None:
    pool = make_pool()

    await pool.init()
    await pool.init()

    assert len(runtime.detached) == 2
    await pool.shutdown()


async def test_worker_that_never_reports_ready_is_dead(make_pool, control) -> None:
    control.healthy[9101] = {"ready": False, "busy": False}
    pool = make_pool()

    await pool.init()

    assert pool.workers[0].status is WorkerStatus.READY
    assert pool.workers[1].status is WorkerStatus.DEAD
    await pool.shutdown()


async def test_spawn_failure_leaves_slot_dead(make_pool, runtime) -> None:
    runtime.run_detached_error = True
    pool = make_pool()

    await pool.init()

    assert all(w.status is WorkerStatus.DEAD for w in pool.workers)
    assert not pool.has_available_worker()
    await pool.shutdown()


async def test_assign_job_marks_completed_and_returns_worker_to_ready(
    make_pool, control, store
) -> None:
    store.add(JOB_A)
    pool = make_pool()
    await pool.init()

    await pool.assign_job(JOB_A, "job/a")

    worker = pool.workers[0]
    assert worker.status is WorkerStatus.READY
    assert worker.jobs_run == 1
    assert worker.current_job_id is None
    assert (9100, "/run", {"jobId": JOB_A, "branch": "job/a"}) in control.posts
    assert store.jobs[JOB_A].status is JobStatus.COMPLETED
    assert store.jobs[JOB_A].runner_type is RunnerType.WARM
    assert store.texts() == ["Job aaaaaaaa completed (warm)"]
    await pool.shutdown()


async def test_assign_job_records_worker_failure(make_pool, control, store) -> None:
    store.add(JOB_A)
    control.run_results[9100] = ControlResponse(500, {"status": "failed", "error": "x" * 300})
    pool = make_pool()
    await pool.init()

    await pool.assign_job(JOB_A, "job/a")

    assert store.jobs[JOB_A].status is JobStatus.FAILED
    assert store.jobs[JOB_A].error == "x" * 300
    assert store.texts() == [f"Job aaaaaaaa failed (warm): {'x' * 100}"]
    assert pool.workers[0].status is WorkerStatus.READY
    await pool.shutdown()


async def test_concurrent_assignments_never_share_a_worker(make_pool, control, store) -> None:
    store.add(JOB_A)
    store.add(JOB_B)
    control.gates[9100] = asyncio.Event()
    control.gates[9101] = asyncio.Event()
    pool = make_pool()
    await pool.init()

    first = asyncio.create_task(pool.assign_job(JOB_A, "job/a"))
    second = asyncio.create_task(pool.assign_job(JOB_B, "job/b"))
    await wait_until(lambda: all(w.status is WorkerStatus.BUSY for w in pool.workers))

    assert {w.current_job_id for w in pool.workers} == {JOB_A, JOB_B}
    assert not pool.has_available_worker()
    with pytest.raises(NoAvailableWorkerError):
        await pool.assign_job("c", "job/c")

    control.gates[9100].set()
    control.gates[9101].set()
    await asyncio.gather(first, second)
    await pool.shutdown()


async def test_unreachable_worker_falls_back_to_cold_runner(
    make_pool, control, runtime, store, tasks
) -> None:
    store.add(JOB_A)
    control.run_results[9100] = WorkerUnreachableError(
        "Connection refused", host="127.0.0.1", port=9100, path="/run"
    )
    runtime.auto_finish_code = 0
    pool = make_pool()
    await pool.init()

    await pool.assign_job(JOB_A, "job/a")

    assert runtime.spawned[0].labels == {"kiln-job": JOB_A}
    assert store.jobs[JOB_A].status is JobStatus.COMPLETED
    assert store.jobs[JOB_A].runner_type is RunnerType.LOCAL
    await _settle(tasks)
    assert runtime.detached[-1].name == "kiln-warm-0"
    assert pool.workers[0].status is WorkerStatus.READY
    await pool.shutdown()


async def test_worker_recycles_after_max_jobs(make_config, make_pool, runtime, store, tasks) -> None:
    config = make_config(warm_pool={"size": 1, "max_jobs_per_worker": 2})
    pool = make_pool(config)
    await pool.init()
    store.add(JOB_A)
    store.add(JOB_B)

    await pool.assign_job(JOB_A, "job/a")
    assert len(runtime.detached) == 1
    await pool.assign_job(JOB_B, "job/b")
    await _settle(tasks)

    assert len(runtime.detached) == 2
    assert "kiln-warm-0" in runtime.removed
    worker = pool.workers[0]
    assert worker.status is WorkerStatus.READY
    assert worker.jobs_run == 0
    await pool.shutdown()


async def test_worker_recycles_after_max_lifetime(
    make_config, make_pool, runtime, clock, tasks
) -> None:
    config = make_config(warm_pool={"size": 1, "max_lifetime_seconds": 60})
    pool = make_pool(config)
    await pool.init()

    clock.advance(61)
    await pool.check_health()
    await _settle(tasks)

    assert len(runtime.detached) == 2
    assert pool.workers[0].started_at == clock.now
    await pool.shutdown()


async def test_policy_recycle_waits_for_job_that_claimed_the_worker(
    make_config, make_pool, runtime, control, store, clock, tasks
) -> None:
    config = make_config(warm_pool={"size": 1, "max_lifetime_seconds": 60})
    pool = make_pool(config)
    await pool.init()
    worker = pool.workers[0]
    store.add(JOB_B)
    removed_before = list(runtime.removed)
    gate = control.gates[9100] = asyncio.Event()

    clock.advance(61)
    assignment = asyncio.create_task(pool.assign_job(JOB_B, "job/b"))
    await pool.check_health()
    await wait_until(lambda: "/run" in control.paths(9100))
    await _settle(tasks)

    assert worker.status is WorkerStatus.BUSY
    assert worker.current_job_id == JOB_B
    assert runtime.removed == removed_before
    assert "/shutdown" not in control.paths(9100)

    gate.set()
    await assignment
    await _settle(tasks)

    assert store.jobs[JOB_B].status is JobStatus.COMPLETED
    assert len(runtime.detached) == 2
    assert "kiln-warm-0" in runtime.removed[len(removed_before):]
    assert worker.status is WorkerStatus.READY
    await pool.shutdown()


async def test_recycle_is_a_noop_while_recycling(make_config, make_pool, runtime, control) -> None:
    config = make_config(warm_pool={"size": 1, "startup_timeout_seconds": 5})
    pool = make_pool(config)
    await pool.init()
    worker = pool.workers[0]
    control.healthy[9100] = {"ready": False}

    first = asyncio.create_task(pool.recycle(worker))
    await wait_until(lambda: worker.status is WorkerStatus.RECYCLING)
    assert await pool.recycle(worker) is False
    control.healthy[9100] = {"ready": True, "busy": False}
    assert await first is True

    assert len(runtime.detached) == 2
    await pool.shutdown()


async def test_health_failures_below_threshold_are_tolerated(
    make_config, make_pool, control, runtime
) -> None:
    config = make_config(warm_pool={"size": 1})
    pool = make_pool(config)
    await pool.init()
    control.healthy[9100] = None

    await pool.check_health()
    await pool.check_health()

    assert pool.workers[0].consecutive_failures == 2
    assert pool.workers[0].status is WorkerStatus.READY

    control.healthy[9100] = {"ready": True, "busy": False}
    await pool.check_health()
    assert pool.workers[0].consecutive_failures == 0
    await pool.shutdown()


async def test_third_health_failure_recycles(
    make_config, make_pool, control, runtime, tasks
) -> None:
    config = make_config(warm_pool={"size": 1})
    pool = make_pool(config)
    await pool.init()
    control.healthy[9100] = None

    for _ in range(3):
        await pool.check_health()
    await _settle(tasks)

    assert len(runtime.detached) == 2
    assert pool.workers[0].status is WorkerStatus.DEAD
    await pool.shutdown()


async def test_dead_worker_is_revived_with_backoff(
    make_config, make_pool, control, runtime, clock, tasks
) -> None:
    config = make_config(warm_pool={"size": 1, "revive_backoff_seconds": 10})
    control.healthy[9100] = {"ready": False}
    pool = make_pool(config)
    await pool.init()
    worker = pool.workers[0]
    assert worker.status is WorkerStatus.DEAD

    await pool.check_health()
    await _settle(tasks)
    assert len(runtime.detached) == 1

    clock.advance(10)
    await pool.check_health()
    await _settle(tasks)
    assert len(runtime.detached) == 2
    assert worker.revive_attempts == 1
    assert worker.next_revive_at == pytest.approx(clock.now + 20)

    control.healthy[9100] = {"ready": True, "busy": False}
    clock.advance(20)
    await pool.check_health()
    await _settle(tasks)
    assert worker.status is WorkerStatus.READY
    assert worker.revive_attempts == 0
    await pool.shutdown()


async def test_revive_gives_up_after_max_attempts_until_reinit(
    make_config, make_pool, control, runtime, clock, tasks
) -> None:
    config = make_config(
        warm_pool={"size": 1, "revive_backoff_seconds": 1, "revive_max_attempts": 2}
    )
    control.healthy[9100] = {"ready": False}
    pool = make_pool(config)
    await pool.init()
    worker = pool.workers[0]

    for _ in range(6):
        clock.advance(100)
        await pool.check_health()
        await _settle(tasks)

    assert worker.revive_attempts == 2
    assert worker.next_revive_at is None
    assert len(runtime.detached) == 3

    control.healthy[9100] = {"ready": True, "busy": False}
    assert await pool.reinit_worker(0) is True
    assert worker.status is WorkerStatus.READY
    with pytest.raises(ValueError):
        await pool.reinit_worker(5)
    await pool.shutdown()


async def test_idle_report_reconciles_stale_busy_worker(make_config, make_pool) -> None:
    config = make_config(warm_pool={"size": 1})
    pool = make_pool(config)
    await pool.init()
    worker = pool.workers[0]
    worker.status = WorkerStatus.BUSY
    worker.current_job_id = "lost"

    await pool.check_health()

    assert worker.status is WorkerStatus.READY
    assert worker.current_job_id is None
    await pool.shutdown()


async def test_in_flight_worker_is_not_reconciled(make_config, make_pool, control, store) -> None:
    config = make_config(warm_pool={"size": 1})
    store.add(JOB_A)
    control.gates[9100] = asyncio.Event()
    pool = make_pool(config)
    await pool.init()

    task = asyncio.create_task(pool.assign_job(JOB_A, "job/a"))
    await wait_until(lambda: pool.workers[0].status is WorkerStatus.BUSY)
    await pool.check_health()

    assert pool.workers[0].status is WorkerStatus.BUSY
    control.gates[9100].set()
    await task
    await pool.shutdown()


async def test_cancel_job_posts_cancel_and_skips_outcome(
    make_config, make_pool, control, store, tasks
) -> None:
    config = make_config(warm_pool={"size": 1})
    store.add(JOB_A)
    control.gates[9100] = asyncio.Event()
    control.run_results[9100] = ControlResponse(500, {"status": "failed", "error": "killed"})
    pool = make_pool(config)
    await pool.init()

    task = asyncio.create_task(pool.assign_job(JOB_A, "job/a"))
    await wait_until(lambda: pool.workers[0].current_job_id == JOB_A)

    assert pool.cancel_job(JOB_A) is True
    assert pool.cancel_job("other") is False
    await _settle(tasks)
    assert "/cancel" in control.paths(9100)

    control.gates[9100].set()
    await task
    assert store.jobs[JOB_A].status is JobStatus.RUNNING
    assert store.notifications == []
    await pool.shutdown()


async def test_shutdown_stops_everything_and_is_idempotent(make_pool, runtime, control) -> None:
    pool = make_pool()
    await pool.init()

    await pool.shutdown()
    await pool.shutdown()

    assert sorted(runtime.stopped) == ["kiln-warm-0", "kiln-warm-1"]
    assert control.paths().count("/shutdown") == 2
    assert not pool.has_available_worker()
    with pytest.raises(NoAvailableWorkerError):
        await pool.assign_job(JOB_A, "job/a")


async def test_init_removes_orphaned_warm_containers(make_pool, runtime) -> None:
    from kiln.core.adapters.docker import ContainerListing

    runtime.listings = [ContainerListing("kiln-warm-7", "true")]
    pool = make_pool()

    await pool.init()

    assert runtime.removed[0] == "kiln-warm-7"
    await pool.shutdown()


async def test_status_snapshot(make_pool) -> None:
    pool = make_pool()
    await pool.init()

    status = pool.get_status()

    assert status["size"] == 2
    assert status["available"] == 2
    assert [w["port"] for w in status["workers"]] == [9100, 9101]
    await pool.shutdown()
