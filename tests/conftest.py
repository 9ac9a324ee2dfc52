"""Pytest fixtures for Kiln tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

_TEST_BASE_DIR = Path(tempfile.mkdtemp(prefix="kiln-tests-"))
os.environ["KILN_DATA_DIR"] = str(_TEST_BASE_DIR / "data")
os.environ["KILN_CONFIG_DIR"] = str(_TEST_BASE_DIR / "config")
os.environ.pop("KILN_CONFIG", None)
os.environ.pop("KILN_DB_PATH", None)

from kiln.core.config import KilnConfig  # noqa: E402
from kiln.core.execution.hooks import JobFinalizer  # noqa: E402
from kiln.core.execution.router import ExecutionRouter  # noqa: E402
from tests.helpers.fakes import FakeControl, FakeRuntime, InMemoryJobStore  # noqa: E402

if TYPE_CHECKING:
    from collections.abc import Callable


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_config() -> Callable[..., KilnConfig]:
    """Config with fast polling; keyword sections override defaults."""

    def _make(**sections: dict[str, object]) -> KilnConfig:
        data: dict[str, dict[str, object]] = {
            "execution": {"mode": "local", "image_override": "kiln/agent-job:test"},
            "local": {"max_concurrent": 2, "forward_output": False},
            "warm_pool": {
                "size": 2,
                "startup_poll_seconds": 0,
                "startup_timeout_seconds": 0.05,
                "health_interval_seconds": 3600,
                "revive_backoff_seconds": 10,
            },
            "workspace": {
                "enabled": True,
                "startup_poll_seconds": 0,
                "startup_timeout_seconds": 0.05,
                "health_interval_seconds": 3600,
            },
            "agent": {"gh_owner": "acme", "gh_repo": "widgets"},
        }
        for name, values in sections.items():
            data.setdefault(name, {}).update(values)
        return KilnConfig.from_mapping(data, environ={})

    return _make


@pytest.fixture
def config(make_config: Callable[..., KilnConfig]) -> KilnConfig:
    return make_config()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def control() -> FakeControl:
    return FakeControl()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def finalizer(store: InMemoryJobStore) -> JobFinalizer:
    return JobFinalizer(store, store)


@pytest.fixture
def router(config: KilnConfig, runtime: FakeRuntime) -> ExecutionRouter:
    return ExecutionRouter(config.execution, runtime)  # type: ignore[arg-type]
