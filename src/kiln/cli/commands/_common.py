"""Helpers shared by CLI commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from kiln.core.config import KilnConfig


def load_config(ctx: click.Context) -> KilnConfig:
    from kiln.core.config import KilnConfig

    config_path = (ctx.obj or {}).get("config_path")
    try:
        return KilnConfig.load(config_path)
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
