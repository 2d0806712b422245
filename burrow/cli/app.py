"""Main Typer application — imports and registers all CLI commands.

Entry point: ``burrow`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import logging

import typer

from burrow.cli.commands.install import install_cmd
from burrow.cli.commands.inventory import latest_cmd, list_cmd, verify_cmd
from burrow.cli.commands.pack import pack_cmd
from burrow.cli.commands.service import rollback_cmd, start_cmd, status_cmd
from burrow.config import BurrowSettings

app = typer.Typer(
    name="burrow",
    help="Burrow: content-addressed packages and supervised services.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="pack", help="Pack a directory into an artifact.")(pack_cmd)
app.command(name="install", help="Install a package and its dependencies.")(install_cmd)
app.command(name="list", help="List installed packages.")(list_cmd)
app.command(name="latest", help="Show the newest installed build of a package.")(latest_cmd)
app.command(name="verify", help="Verify installed trees against their manifests.")(verify_cmd)
app.command(name="start", help="Supervise a service in the foreground.")(start_cmd)
app.command(name="status", help="Show a service's package and config.")(status_cmd)
app.command(name="rollback", help="Repoint a service to its previous build.")(rollback_cmd)


@app.callback()
def configure(
    log_level: str = typer.Option(
        None, "--log-level", help="Override BURROW_LOG_LEVEL for this run."
    ),
) -> None:
    """Configure logging before any subcommand runs."""
    level = (log_level or BurrowSettings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
