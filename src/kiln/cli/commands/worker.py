"""In-container worker programs."""

from __future__ import annotations

import click


@click.command()
@click.argument("kind", type=click.Choice(["warm", "workspace"]))
def worker(kind: str) -> None:
    """Serve a warm or workspace worker on the container port."""
    if kind == "warm":
        from kiln.workers.warm_worker import main
    else:
        from kiln.workers.workspace_worker import main
    raise SystemExit(main())
