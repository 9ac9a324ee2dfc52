"""Long-running orchestrator process."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import TYPE_CHECKING

import click

from ._common import load_config

if TYPE_CHECKING:
    from kiln.core.config import KilnConfig


async def _serve(config: KilnConfig) -> None:
    from kiln.core.orchestrator import Orchestrator

    orchestrator = Orchestrator(config)
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_requested.set)

    await orchestrator.start()
    try:
        await stop_requested.wait()
    finally:
        await orchestrator.stop(reason="signal received")


@click.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the orchestrator until SIGINT/SIGTERM."""
    config = load_config(ctx)
    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        pass
