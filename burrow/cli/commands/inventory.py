"""``burrow list`` / ``latest`` / ``verify`` — inspect the package store."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from burrow.cli.options import ROOT_OPTION, console, load_settings
from burrow.core.layout import FsLayout
from burrow.core.store import PackageStore


def _store(root: Path | None) -> PackageStore:
    return PackageStore(FsLayout(load_settings(root).root).store_dir)


def list_cmd(
    name: str = typer.Argument(None, help="Only show this package."),
    root: Path = ROOT_OPTION,
) -> None:
    """List installed store entries."""
    entries = _store(root).entries(name)
    if not entries:
        console.print("[dim]No packages installed.[/dim]")
        return

    table = Table(title="Installed Packages")
    table.add_column("Package", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Release")
    table.add_column("Identity")
    table.add_column("Derivation")
    for entry in entries:
        table.add_row(
            entry.ident.name,
            entry.ident.version,
            entry.ident.release,
            entry.identity[:12],
            entry.derivation or "",
        )
    console.print(table)


def latest_cmd(
    name: str = typer.Argument(..., help="Package name."),
    version: str = typer.Option(None, "--version", "-v", help="Exact version."),
    derivation: str = typer.Option(None, "--derivation", "-d", help="Publisher/origin."),
    root: Path = ROOT_OPTION,
) -> None:
    """Print the newest installed entry for a package."""
    store = _store(root)
    if derivation is not None:
        entry = store.latest_derivation(name, version, derivation)
    else:
        entry = store.latest_package(name, version)
    if entry is None:
        console.print(f"[bold red]Not installed:[/bold red] {name}")
        raise typer.Exit(code=1)
    console.print(entry.ident.store_name, soft_wrap=True)


def verify_cmd(
    name: str = typer.Argument(None, help="Only verify this package."),
    root: Path = ROOT_OPTION,
) -> None:
    """Re-hash installed trees against their manifests."""
    store = _store(root)
    entries = store.entries(name)
    failed = 0
    for entry in entries:
        if store.verify(entry):
            console.print(f"[green]OK[/green]      {entry.ident.store_name}", soft_wrap=True)
        else:
            failed += 1
            console.print(f"[bold red]DAMAGED[/bold red] {entry.ident.store_name}", soft_wrap=True)
    console.print(f"\n{len(entries) - failed}/{len(entries)} entries intact")
    if failed:
        raise typer.Exit(code=1)
