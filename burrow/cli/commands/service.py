"""``burrow start`` / ``status`` / ``rollback`` — service slots.

``start`` runs a supervisor in the foreground until interrupted, until
``--run-for`` elapses, or until restart attempts are exhausted (exit 1).
``status`` reads what a supervisor publishes on disk, so it works from a
separate process.
"""

from __future__ import annotations

import json
import signal
import threading
import time
from pathlib import Path

import typer
from rich.panel import Panel
from rich.table import Table

from burrow.cli.options import ROOT_OPTION, console, fail, load_settings
from burrow.core.installer import Installer
from burrow.core.supervisor import ServiceSupervisor
from burrow.errors import BurrowError, PointerError
from burrow.models.service import ServiceSpec


def start_cmd(
    service: str = typer.Argument(..., help="Service slot name."),
    command: list[str] = typer.Argument(
        None, help="Command to run instead of the package's hooks/run."
    ),
    package: str = typer.Option(
        None, "--package", "-p", help="Activate the newest installed build of this package first."
    ),
    run_for: float = typer.Option(
        None, "--run-for", help="Stop the service after this many seconds."
    ),
    root: Path = ROOT_OPTION,
) -> None:
    """Supervise SERVICE in the foreground."""
    settings = load_settings(root)
    installer = Installer(settings)

    if package:
        entry = installer.store.latest_package(package)
        if entry is None:
            console.print(f"[bold red]Not installed:[/bold red] {package}")
            raise typer.Exit(code=1)
        installer.activate(service, entry)
    if not installer.pointer(service).is_set():
        console.print(
            f"[bold red]No package is active for {service}.[/bold red] "
            "Use --package or install --activate."
        )
        raise typer.Exit(code=1)

    supervisor = ServiceSupervisor.from_settings(
        ServiceSpec(name=service, command=list(command or [])), settings
    )
    stop = threading.Event()
    previous = {
        sig: signal.signal(sig, lambda *_: stop.set())
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    started = time.monotonic()
    try:
        supervisor.start()
        console.print(f"[bold green]Supervising {service}[/bold green] (Ctrl-C to stop)")
        while not stop.wait(0.2):
            if supervisor.status().fatal_error:
                break
            if run_for is not None and time.monotonic() - started >= run_for:
                break
        supervisor.stop(timeout=settings.grace_timeout_seconds + 5.0)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    try:
        supervisor.raise_if_fatal()
    except BurrowError as exc:
        raise fail(exc, "Service") from exc
    console.print(f"[bold]{service}[/bold] stopped")


def status_cmd(
    service: str = typer.Argument(..., help="Service slot name."),
    root: Path = ROOT_OPTION,
) -> None:
    """Show the active package and the published EffectiveConfig."""
    installer = Installer(load_settings(root))
    layout = installer.layout
    pointer = installer.pointer(service)

    try:
        entry = pointer.read()
        active = f"{entry.ident}"
    except PointerError as exc:
        if not pointer.is_set():
            console.print(f"[bold red]Unknown service:[/bold red] {service}")
            raise typer.Exit(code=1) from exc
        active = f"[red]{exc}[/red]"

    published = layout.effective_config_file(service)
    config = json.loads(published.read_text(encoding="utf-8")) if published.is_file() else None
    config_link = layout.config_dir(service)
    generation = config_link.resolve().name if config_link.is_symlink() else "none"

    lines = [
        f"[bold]Service:[/bold]    {service}",
        f"[bold]Package:[/bold]    {active}",
        f"[bold]Config:[/bold]     {generation}",
    ]
    if config is not None:
        lines.append(f"[bold]Source:[/bold]     {config['source']} (revision {config['revision']})")
    console.print(Panel("\n".join(lines), title="Service Status", border_style="blue"))

    if config and config["values"]:
        table = Table(title="Effective Config")
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in config["values"].items():
            table.add_row(key, str(value))
        console.print(table)


def rollback_cmd(
    service: str = typer.Argument(..., help="Service slot name."),
    root: Path = ROOT_OPTION,
) -> None:
    """Point SERVICE at the previous installed build of its package."""
    installer = Installer(load_settings(root))
    try:
        target = installer.rollback(service)
    except PointerError as exc:
        raise fail(exc, "Rollback") from exc
    console.print(f"[bold green]{service}[/bold green] rolled back to {target.ident}")
