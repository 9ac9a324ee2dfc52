"""Root CLI command registration."""

from __future__ import annotations

from pathlib import Path

import click

from kiln.version import get_kiln_version

from .cleanup import cleanup
from .run import run
from .serve import serve
from .status import status
from .worker import worker

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="KILN_CONFIG",
    default=None,
    help="Path to config.toml (environment variables still override it)",
)
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, version: bool, config_path: Path | None, log_level: str) -> None:
    """Warm-pool execution orchestrator for autonomous coding agent jobs."""
    if version:
        click.echo(f"kiln {get_kiln_version() or 'unknown'}")
        ctx.exit(0)

    from kiln.debug_log import setup_logging

    setup_logging(log_level.upper())
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(serve)
cli.add_command(run)
cli.add_command(status)
cli.add_command(cleanup)
cli.add_command(worker)
