"""Environment passed into job and worker containers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

    from kiln.core.config import AgentEnvConfig

_AGENT_PREFIX = "AGENT_"
_LLM_PREFIX = "AGENT_LLM_"
_FALLBACK_SECRET_NAMES = (
    "GH_TOKEN",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GOOGLE_API_KEY",
    "CUSTOM_API_KEY",
)


def build_secrets_json(environ: Mapping[str, str]) -> str:
    """JSON object of ``AGENT_*`` (minus ``AGENT_LLM_*``) with the prefix stripped.

    When no such variable exists, well-known credential variables are passed
    through under their own names instead.
    """
    secrets = {
        key[len(_AGENT_PREFIX) :]: value
        for key, value in environ.items()
        if key.startswith(_AGENT_PREFIX) and not key.startswith(_LLM_PREFIX)
    }
    if not secrets:
        secrets = {name: environ[name] for name in _FALLBACK_SECRET_NAMES if environ.get(name)}
    return json.dumps(secrets)


def build_llm_secrets_json(environ: Mapping[str, str]) -> str:
    """JSON object of ``AGENT_LLM_*`` with the prefix stripped."""
    return json.dumps(
        {
            key[len(_LLM_PREFIX) :]: value
            for key, value in environ.items()
            if key.startswith(_LLM_PREFIX)
        }
    )


def build_credential_env(agent: AgentEnvConfig, environ: Mapping[str, str]) -> dict[str, str]:
    """Secrets plus model routing; shared by every container kind."""
    env = {
        "SECRETS": build_secrets_json(environ),
        "LLM_SECRETS": build_llm_secrets_json(environ),
    }
    env.update(agent.model_routing_env())
    return env


def build_agent_env(
    agent: AgentEnvConfig,
    environ: Mapping[str, str],
    *,
    branch: str | None = None,
) -> dict[str, str]:
    """Full ``-e`` set for a job or warm worker container (insertion-ordered)."""
    env = {"REPO_URL": agent.repo_url}
    if branch is not None:
        env["BRANCH"] = branch
    env.update(build_credential_env(agent, environ))
    return env


__all__ = [
    "build_agent_env",
    "build_credential_env",
    "build_llm_secrets_json",
    "build_secrets_json",
]
