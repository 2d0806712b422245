"""``burrow pack SOURCE_DIR`` — build an artifact from a directory tree.

Computes the Identity from the given build inputs, writes the artifact
named ``name!version!release!identity!platform!arch`` and optionally
publishes it to a directory depot.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.panel import Panel

from burrow.cli.options import ROOT_OPTION, console, fail, load_settings, parse_pairs
from burrow.core.artifact import pack_artifact
from burrow.core.cache import DirectoryDepot
from burrow.models.package import BuildInputs, PackageIdent, PackageSpec


def pack_cmd(
    source_dir: Path = typer.Argument(..., help="Directory to pack."),
    name: str = typer.Option(..., "--name", "-n", help="Package name."),
    version: str = typer.Option(..., "--version", "-v", help="Package version."),
    derivation: str = typer.Option(None, "--derivation", "-d", help="Publisher/origin."),
    source_location: str = typer.Option("", "--source", help="Source location (URL)."),
    source_revision: str = typer.Option("", "--revision", help="Source revision."),
    flags: list[str] = typer.Option(None, "--flag", help="Build flag KEY=VALUE (repeatable)."),
    script: Path = typer.Option(None, "--script", help="Build script file to hash."),
    deps: list[str] = typer.Option(None, "--dep", help="Dependency identity (repeatable)."),
    out_dir: Path = typer.Option(Path("."), "--out", "-o", help="Output directory."),
    publish: Path = typer.Option(None, "--publish", "-u", help="Also publish to this depot."),
    root: Path = ROOT_OPTION,
) -> None:
    """Pack SOURCE_DIR into a content-addressed artifact."""
    settings = load_settings(root)
    spec = PackageSpec(
        name=name,
        version=version,
        derivation=derivation,
        platform=settings.platform,
        arch=settings.arch,
    )
    try:
        build_inputs = BuildInputs(
            source_location=source_location,
            source_revision=source_revision,
            build_flags=parse_pairs(flags, "--flag"),
            build_script=script.read_text(encoding="utf-8") if script else "",
            dependencies=list(deps or []),
        )
        artifact = pack_artifact(source_dir, spec, build_inputs, out_dir)
    except (OSError, ValueError) as exc:
        raise fail(exc, "Pack") from exc

    ident = PackageIdent.from_artifact_name(artifact.name)
    lines = [
        f"[bold]Package:[/bold]  {ident.name} {ident.version}",
        f"[bold]Release:[/bold]  {ident.release}",
        f"[bold]Identity:[/bold] [cyan]{ident.identity}[/cyan]",
        f"[bold]Artifact:[/bold] {artifact}",
    ]
    if publish is not None:
        published = DirectoryDepot(publish).publish(artifact)
        lines.append(f"[bold]Depot:[/bold]    {published}")

    console.print(Panel("\n".join(lines), title="Packed", border_style="green"))
