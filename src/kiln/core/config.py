"""Configuration loader for Kiln.

Values come from an optional TOML file and are then overlaid with the
environment variables the control plane has always recognised
(``EXECUTION_MODE``, ``WARM_POOL_SIZE`` ...), so a bare ``.env`` keeps working.
"""

from __future__ import annotations

import logging
import os
import tomllib
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from kiln.core import limits
from kiln.core.models.enums import ExecutionMode
from kiln.core.paths import get_config_path

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_REPOSITORY = "kiln/agent-job"
DEFAULT_NAME_PREFIX = "kiln"


class ExecutionConfig(BaseModel):
    """Execution tier selection and container image."""

    mode: ExecutionMode = Field(default=ExecutionMode.GITHUB)
    image_override: str | None = Field(
        default=None, description="Explicit job image; skips version-pinned resolution"
    )
    image_repository: str = Field(default=DEFAULT_IMAGE_REPOSITORY)
    name_prefix: str = Field(
        default=DEFAULT_NAME_PREFIX,
        description="Prefix for container names and labels owned by this orchestrator",
    )
    runtime_binary: str = Field(default="docker")
    probe_ttl_seconds: float = Field(default=limits.RUNTIME_PROBE_TTL_SECONDS)
    probe_timeout_seconds: float = Field(default=limits.RUNTIME_PROBE_TIMEOUT_SECONDS)
    spawn_timeout_seconds: float = Field(default=limits.CONTAINER_SPAWN_TIMEOUT_SECONDS)

    @field_validator("mode", mode="before")
    @classmethod
    def coerce_mode(cls, value: object) -> str:
        """Unknown modes fall back to the remote tier."""
        if isinstance(value, str) and value.strip().lower() in {m.value for m in ExecutionMode}:
            return value.strip().lower()
        return ExecutionMode.GITHUB.value


class LocalRunnerConfig(BaseModel):
    """Cold-start runner limits."""

    max_concurrent: int = Field(default=2, ge=1)
    max_log_bytes: int = Field(default=limits.MAX_JOB_LOG_BYTES, ge=1)
    error_tail_chars: int = Field(default=limits.JOB_ERROR_TAIL_CHARS, ge=1)
    stop_grace_seconds: int = Field(default=limits.CONTAINER_STOP_GRACE_SECONDS, ge=0)
    forward_output: bool = Field(
        default=True, description="Mirror job container output to this process's streams"
    )


class WarmPoolConfig(BaseModel):
    """Warm worker pool sizing and recycle policy."""

    size: int = Field(default=0, ge=0, description="0 disables the pool")
    max_jobs_per_worker: int = Field(default=10, ge=1)
    max_lifetime_seconds: int = Field(default=3600, ge=1)
    port_start: int = Field(default=9100, ge=1, le=65535)
    health_interval_seconds: float = Field(default=limits.WARM_HEALTH_INTERVAL_SECONDS)
    startup_timeout_seconds: float = Field(default=limits.WARM_STARTUP_TIMEOUT_SECONDS)
    startup_poll_seconds: float = Field(default=limits.WARM_STARTUP_POLL_SECONDS)
    max_consecutive_failures: int = Field(default=limits.WARM_MAX_CONSECUTIVE_FAILURES, ge=1)
    revive_max_attempts: int = Field(
        default=limits.WARM_REVIVE_MAX_ATTEMPTS,
        ge=0,
        description="Recycle attempts for a dead slot before it waits for an operator",
    )
    revive_backoff_seconds: float = Field(default=limits.WARM_REVIVE_BACKOFF_SECONDS)
    run_timeout_seconds: float = Field(default=limits.JOB_RUN_TIMEOUT_SECONDS)


class WorkspaceConfig(BaseModel):
    """Interactive workspace container."""

    enabled: bool = Field(default=False)
    port: int = Field(default=9200, ge=1, le=65535)
    idle_timeout_seconds: int = Field(default=1800, ge=1)
    health_interval_seconds: float = Field(default=limits.WORKSPACE_HEALTH_INTERVAL_SECONDS)
    startup_timeout_seconds: float = Field(default=limits.WORKSPACE_STARTUP_TIMEOUT_SECONDS)
    startup_poll_seconds: float = Field(default=limits.WORKSPACE_STARTUP_POLL_SECONDS)
    request_timeout_seconds: float = Field(default=limits.WORKSPACE_REQUEST_TIMEOUT_SECONDS)


class AgentEnvConfig(BaseModel):
    """Repository and model routing passed into every container."""

    gh_owner: str | None = Field(default=None)
    gh_repo: str | None = Field(default=None)
    llm_model: str | None = Field(default=None)
    llm_provider: str | None = Field(default=None)
    openai_base_url: str | None = Field(default=None)
    docker_host: str | None = Field(default=None)

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.gh_owner}/{self.gh_repo}.git"

    @property
    def worker_hostname(self) -> str:
        """Host that published container ports are reachable on."""
        if not self.docker_host:
            return "127.0.0.1"
        parsed = urlparse(self.docker_host)
        if parsed.scheme in ("unix", "npipe", ""):
            return "127.0.0.1"
        return parsed.hostname or "127.0.0.1"

    def model_routing_env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.llm_model:
            env["LLM_MODEL"] = self.llm_model
        if self.llm_provider:
            env["LLM_PROVIDER"] = self.llm_provider
        if self.openai_base_url:
            env["OPENAI_BASE_URL"] = self.openai_base_url
        return env


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_optional_str(raw: str) -> str | None:
    return raw.strip() or None


# env var -> (section, field, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "EXECUTION_MODE": ("execution", "mode", str),
    "JOB_DOCKER_IMAGE": ("execution", "image_override", _parse_optional_str),
    "LOCAL_MAX_CONCURRENT": ("local", "max_concurrent", int),
    "WARM_POOL_SIZE": ("warm_pool", "size", int),
    "WARM_POOL_MAX_JOBS": ("warm_pool", "max_jobs_per_worker", int),
    "WARM_POOL_MAX_LIFETIME": ("warm_pool", "max_lifetime_seconds", int),
    "WARM_POOL_PORT_START": ("warm_pool", "port_start", int),
    "WORKSPACE_ENABLED": ("workspace", "enabled", _parse_bool),
    "WORKSPACE_IDLE_TIMEOUT": ("workspace", "idle_timeout_seconds", int),
    "WORKSPACE_PORT": ("workspace", "port", int),
    "GH_OWNER": ("agent", "gh_owner", _parse_optional_str),
    "GH_REPO": ("agent", "gh_repo", _parse_optional_str),
    "LLM_MODEL": ("agent", "llm_model", _parse_optional_str),
    "LLM_PROVIDER": ("agent", "llm_provider", _parse_optional_str),
    "OPENAI_BASE_URL": ("agent", "openai_base_url", _parse_optional_str),
    "DOCKER_HOST": ("agent", "docker_host", _parse_optional_str),
}


class KilnConfig(BaseModel):
    """Root configuration model."""

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    local: LocalRunnerConfig = Field(default_factory=LocalRunnerConfig)
    warm_pool: WarmPoolConfig = Field(default_factory=WarmPoolConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    agent: AgentEnvConfig = Field(default_factory=AgentEnvConfig)

    @classmethod
    def load(
        cls,
        config_path: Path | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> KilnConfig:
        """Load configuration from TOML (if present) overlaid with environment variables."""
        if config_path is None:
            config_path = get_config_path()

        data: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)

        return cls.from_mapping(data, environ=os.environ if environ is None else environ)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> KilnConfig:
        """Build config from a parsed TOML-like mapping plus environment overrides."""
        merged: dict[str, dict[str, Any]] = {
            section: dict(values)
            for section, values in (data or {}).items()
            if isinstance(values, dict)
        }
        for env_name, (section, field, parser) in _ENV_OVERRIDES.items():
            raw = (environ or {}).get(env_name)
            if raw is None or raw == "":
                continue
            try:
                merged.setdefault(section, {})[field] = parser(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r, using default", env_name, raw)
        return cls.model_validate(merged)

    def label(self, kind: str) -> str:
        """Container label key for a kind of container (``job``, ``warm``, ``workspace``)."""
        return f"{self.execution.name_prefix}-{kind}"


__all__ = [
    "AgentEnvConfig",
    "ExecutionConfig",
    "KilnConfig",
    "LocalRunnerConfig",
    "WarmPoolConfig",
    "WorkspaceConfig",
]
