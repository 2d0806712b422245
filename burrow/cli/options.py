"""Shared CLI helpers: settings loading and error reporting."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from burrow.config import BurrowSettings
from burrow.errors import BurrowError

console = Console()


def load_settings(root: Path | None = None) -> BurrowSettings:
    """Read settings from the environment, with an optional ``--root`` override."""
    settings = BurrowSettings()
    if root is not None:
        settings = settings.model_copy(update={"root": root})
    return settings


def fail(exc: BurrowError | Exception, action: str) -> typer.Exit:
    """Print *exc* and return the ``typer.Exit`` to raise."""
    console.print(f"[bold red]{action} failed:[/bold red] {exc}")
    return typer.Exit(code=1)


def parse_pairs(items: list[str] | None, option: str) -> list[tuple[str, str]]:
    """Split ``key=value`` option values."""
    pairs = []
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=option)
        pairs.append((key, value))
    return pairs


ROOT_OPTION = typer.Option(
    None,
    "--root",
    "-r",
    help="Burrow root directory (default: $BURROW_ROOT or .burrow).",
)
