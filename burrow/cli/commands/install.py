"""``burrow install PACKAGE`` — resolve, fetch and extract a package closure.

PACKAGE is either a package name (resolved against the store, the cache and
the depot) or the path of a local artifact file.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from burrow.cli.options import ROOT_OPTION, console, fail, load_settings, parse_pairs
from burrow.core.installer import Installer
from burrow.core.resolver import PackagePin
from burrow.errors import BurrowError
from burrow.models.package import is_identity


def _pins(items: list[str] | None) -> dict[str, PackagePin]:
    pins: dict[str, PackagePin] = {}
    for name, value in parse_pairs(items, "--pin"):
        if is_identity(value):
            pins[name] = PackagePin(identity=value)
        else:
            pins[name] = PackagePin(version=value)
    return pins


def install_cmd(
    package: str = typer.Argument(..., help="Package name or artifact file."),
    version: str = typer.Option(None, "--version", "-v", help="Exact version."),
    shasum: str = typer.Option(None, "--shasum", help="Exact identity."),
    derivation: str = typer.Option(None, "--derivation", "-d", help="Publisher/origin."),
    upstream: Path = typer.Option(None, "--upstream", "-u", help="Depot directory."),
    pins: list[str] = typer.Option(
        None, "--pin", help="NAME=VERSION or NAME=IDENTITY for a dependency (repeatable)."
    ),
    activate: str = typer.Option(
        None, "--activate", "-a", help="Point this service at the installed package."
    ),
    root: Path = ROOT_OPTION,
) -> None:
    """Install a package and its dependencies into the store."""
    installer = Installer(load_settings(root))
    try:
        artifact = Path(package)
        if artifact.is_file():
            result = installer.install_artifact(artifact, upstream=upstream)
        else:
            result = installer.install(
                package,
                version=version,
                identity=shasum,
                derivation=derivation,
                upstream=upstream,
                pins=_pins(pins),
            )
        previous = installer.activate(activate, result.root) if activate else None
    except (BurrowError, KeyError) as exc:
        raise fail(exc, "Install") from exc

    table = Table(title=f"Installed {result.root.ident.name}")
    table.add_column("Package", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Release")
    table.add_column("Identity")
    table.add_column("New", justify="center")
    for entry in result.entries:
        new = "[green]Yes[/green]" if entry.identity in result.newly_installed else "[dim]No[/dim]"
        table.add_row(
            entry.ident.name,
            entry.ident.version,
            entry.ident.release,
            entry.identity[:12],
            new,
        )
    console.print(table)

    if activate:
        was = f" (was {previous.ident})" if previous is not None else ""
        console.print(f"[bold green]{activate}[/bold green] now runs {result.root.ident}{was}")
