"""
CLI: ``dockbase compose`` — compose manifests and projects.

Usage::

    dockbase compose validate stack.yml
    dockbase compose generate <id> <id> -o stack.yml
    dockbase compose deploy stack.yml --project shop
    dockbase compose projects
    dockbase compose stop shop
    dockbase compose remove shop --volumes
"""

from __future__ import annotations

from pathlib import Path

import typer

from dockbase.cli.utils import (
    console,
    err_console,
    fail,
    get_service,
    output_data,
    output_result,
    print_table,
    run,
)
from dockbase.core.errors import DeploymentError

app = typer.Typer(no_args_is_help=True)


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        fail(f"Cannot read {path}: {exc}", code="CONFIG")


@app.command()
def validate(
    file: Path = typer.Argument(..., help="Compose file"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Check a compose file for errors and style warnings."""
    report = get_service().validate_compose(_read(file))
    if json_out:
        output_data(report, as_json=True)
    else:
        for error in report.errors:
            err_console.print(f"[red]✗[/red] {error}")
        for warning in report.warnings:
            err_console.print(f"[yellow]![/yellow] {warning}")
        if report.valid:
            console.print(f"[green]✓[/green] {file} is valid")
    if not report.valid:
        raise typer.Exit(code=1)


@app.command()
def generate(
    container_ids: list[str] = typer.Argument(..., help="Containers to include"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
) -> None:
    """Generate a compose file from existing containers."""
    result = run(get_service().generate_compose(container_ids))
    if result.is_err():
        output_result(result)
    text = result.unwrap()
    if output:
        output.write_text(text, encoding="utf-8")
        console.print(f"[green]✓[/green] Wrote {output}")
    else:
        typer.echo(text, nl=False)


@app.command()
def deploy(
    file: Path = typer.Argument(..., help="Compose file"),
    project: str = typer.Option(..., "--project", "-p", help="Project name"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Create a project's volumes, networks and services."""
    result = run(get_service().deploy_compose(_read(file), project))
    failed = result.error if result.is_err() else None
    if isinstance(failed, DeploymentError) and failed.result and failed.result.services:
        print_table(failed.result.services, title=f"Project {project}",
                    columns=["name", "container_name", "status", "error"])
    if json_out or result.is_err():
        output_result(result, as_json=json_out)
        return
    deployment = result.unwrap()
    print_table(deployment.services, title=f"Project {project}",
                columns=["name", "container_name", "image", "status"])
    console.print(f"[green]✓[/green] {deployment.summary}")


@app.command()
def projects(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List compose projects found on the engine."""
    result = run(get_service().list_compose_projects())
    if json_out or result.is_err():
        output_result(result, as_json=json_out)
        return
    rows = [
        {
            "project": p.name,
            "services": [s.name for s in p.services],
            "running": f"{p.running}/{len(p.services)}",
        }
        for p in result.unwrap()
    ]
    output_data(rows, title="Compose Projects")


@app.command()
def start(project: str = typer.Argument(...)) -> None:
    """Start every container of a project."""
    output_result(run(get_service().start_compose_project(project)), title=f"Started {project}")


@app.command()
def stop(project: str = typer.Argument(...)) -> None:
    """Stop every container of a project."""
    output_result(run(get_service().stop_compose_project(project)), title=f"Stopped {project}")


@app.command()
def remove(
    project: str = typer.Argument(...),
    volumes: bool = typer.Option(False, "--volumes", "-v", help="Also remove project volumes and networks"),
) -> None:
    """Remove every container of a project."""
    result = run(get_service().remove_compose_project(project, remove_volumes=volumes))
    output_result(result, title=f"Removed {project}")
