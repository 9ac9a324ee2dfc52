"""One-shot job submission: start, run a single job, stop."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import click

from ._common import load_config

if TYPE_CHECKING:
    from kiln.core.config import KilnConfig

_POLL_SECONDS = 2.0


async def _run_job(config: KilnConfig, prompt: str, source: str) -> tuple[str, str, str | None]:
    from kiln.core.models.enums import TERMINAL_JOB_STATUSES, RunnerType
    from kiln.core.orchestrator import Orchestrator, run_orchestrator

    async with run_orchestrator(Orchestrator(config)) as orchestrator:
        assert orchestrator.dispatcher is not None
        job = await orchestrator.dispatcher.create_job(prompt, source=source)
        click.echo(f"Job {job.id} on branch {job.branch} ({job.runner_type.value})")
        if job.runner_type is RunnerType.GITHUB:
            return job.id, job.status.value, None

        while job.status not in TERMINAL_JOB_STATUSES:
            await asyncio.sleep(_POLL_SECONDS)
            job = await orchestrator.store.get_job(job.id) or job
        return job.id, job.status.value, job.error


@click.command()
@click.argument("prompt")
@click.option("--source", default="cli", show_default=True, help="Recorded job source")
@click.pass_context
def run(ctx: click.Context, prompt: str, source: str) -> None:
    """Create a job for PROMPT and wait for it when it runs locally."""
    config = load_config(ctx)
    job_id, status, error = asyncio.run(_run_job(config, prompt, source))
    color = {"completed": "green", "failed": "red"}.get(status, "yellow")
    click.secho(f"Job {job_id}: {status}", fg=color, bold=True)
    if error:
        click.echo(error)
    if status == "failed":
        raise SystemExit(1)
