"""Orphaned container cleanup."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import click

from ._common import load_config

if TYPE_CHECKING:
    from kiln.core.config import KilnConfig


async def _cleanup(config: KilnConfig) -> int:
    from kiln.core.orchestrator import Orchestrator, run_orchestrator

    # Without a pool or workspace, start() is just the cold-runner orphan sweep.
    config = config.model_copy(
        update={
            "warm_pool": config.warm_pool.model_copy(update={"size": 0}),
            "workspace": config.workspace.model_copy(update={"enabled": False}),
        }
    )
    async with run_orchestrator(Orchestrator(config)) as orchestrator:
        return orchestrator.orphans_cleaned


@click.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Stop orphaned job containers and fail their jobs."""
    config = load_config(ctx)
    count = asyncio.run(_cleanup(config))
    if count:
        click.secho(f"Stopped {count} orphaned container(s).", fg="yellow")
    else:
        click.secho("No orphaned containers found.", fg="green")
