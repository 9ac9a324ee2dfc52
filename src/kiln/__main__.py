"""Entry point for ``python -m kiln``."""

from __future__ import annotations

from kiln.cli.commands.root import cli


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
