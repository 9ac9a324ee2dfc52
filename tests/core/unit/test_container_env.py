from __future__ import annotations

import json

from kiln.core.config import AgentEnvConfig
from kiln.core.execution.container_env import (
    build_agent_env,
    build_credential_env,
    build_llm_secrets_json,
    build_secrets_json,
)


def test_agent_prefixed_vars_become_secrets() -> None:
    environ = {"AGENT_GH_TOKEN": "t", "AGENT_LLM_ANTHROPIC_API_KEY": "k", "HOME": "/root"}

    assert json.loads(build_secrets_json(environ)) == {"GH_TOKEN": "t"}
    assert json.loads(build_llm_secrets_json(environ)) == {"ANTHROPIC_API_KEY": "k"}


def test_well_known_credentials_used_without_agent_vars() -> None:
    environ = {"GH_TOKEN": "t", "OPENAI_API_KEY": "o", "UNRELATED": "x"}

    assert json.loads(build_secrets_json(environ)) == {"GH_TOKEN": "t", "OPENAI_API_KEY": "o"}


def test_credential_env_includes_model_routing() -> None:
    agent = AgentEnvConfig(llm_model="sonnet", llm_provider="custom", openai_base_url="http://llm")

    env = build_credential_env(agent, {})

    assert env["LLM_MODEL"] == "sonnet"
    assert env["LLM_PROVIDER"] == "custom"
    assert env["OPENAI_BASE_URL"] == "http://llm"
    assert env["SECRETS"] == "{}"


def test_agent_env_orders_repo_and_branch_first() -> None:
    agent = AgentEnvConfig(gh_owner="acme", gh_repo="widgets")

    env = build_agent_env(agent, {}, branch="job/1")

    assert list(env)[:2] == ["REPO_URL", "BRANCH"]
    assert env["REPO_URL"] == "https://github.com/acme/widgets.git"
    assert "BRANCH" not in build_agent_env(agent, {})
