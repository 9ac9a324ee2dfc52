"""Resolved configuration and tier status."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console

from ._common import load_config

if TYPE_CHECKING:
    from kiln.core.config import KilnConfig


async def _collect(config: KilnConfig) -> dict[str, Any]:
    from kiln.core.adapters.docker import DockerRuntime
    from kiln.core.execution.router import ExecutionRouter
    from kiln.debug_log import recent_problems
    from kiln.version import get_kiln_version

    runtime = DockerRuntime(config.execution.runtime_binary)
    router = ExecutionRouter(config.execution, runtime)
    mode = await router.resolve_mode()
    return {
        "version": get_kiln_version(),
        "configured_mode": config.execution.mode.value,
        "mode": mode.value,
        "runtime_available": await runtime.is_available(
            timeout=config.execution.probe_timeout_seconds
        ),
        "image": router.resolve_job_image(),
        "config": config.model_dump(mode="json"),
        "recent_problems": recent_problems(),
    }


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Print plain JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Print the resolved execution mode, job image and configuration."""
    config = load_config(ctx)
    data = asyncio.run(_collect(config))
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    Console().print_json(data=data)
