"""
CLI: ``dockbase volumes`` — engine volumes.
"""

from __future__ import annotations

from pathlib import Path

import typer

from dockbase.cli.utils import console, get_service, output_result, run, unwrap_or_exit

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_volumes(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List volumes and the containers using them."""
    result = run(get_service().list_volumes())
    output_result(result, as_json=json_out, title="Volumes", columns=["name", "driver", "in_use_by"])


@app.command()
def remove(
    name: str = typer.Argument(...),
    force: bool = typer.Option(False, "--force", "-f"),
) -> None:
    """Remove a volume."""
    unwrap_or_exit(run(get_service().remove_volume(name, force=force)))
    console.print(f"[green]✓[/green] Removed volume {name}")


@app.command()
def prune(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Remove every volume not used by a container."""
    if not yes:
        typer.confirm("Remove all unused volumes?", abort=True)
    result = run(get_service().prune_volumes())
    if json_out:
        output_result(result, as_json=True)
        return
    report = unwrap_or_exit(result)
    console.print(
        f"[green]✓[/green] Pruned {len(report.deleted)} volume(s), "
        f"{report.space_reclaimed / 1024**2:.1f} MiB reclaimed"
    )


@app.command()
def backup(
    name: str = typer.Argument(...),
    output: Path = typer.Argument(..., help="Archive to write (.tar.gz)"),
) -> None:
    """Archive a volume's contents to a host file."""
    report = unwrap_or_exit(run(get_service().backup_volume(name, output)))
    console.print(f"[green]✓[/green] Backed up {name} to {report.path} ({report.size_bytes} bytes)")


@app.command()
def restore(
    name: str = typer.Argument(...),
    source: Path = typer.Argument(..., help="Archive written by 'volumes backup'"),
) -> None:
    """Unpack a volume backup into a volume, creating it if needed."""
    unwrap_or_exit(run(get_service().restore_volume(name, source)))
    console.print(f"[green]✓[/green] Restored {source} into {name}")
