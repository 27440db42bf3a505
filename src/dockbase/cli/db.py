"""
CLI: ``dockbase db`` — managed database containers.

Usage::

    dockbase db types
    dockbase db create shop --port 5440 --username app --password s3cret
    dockbase db create cache --type redis --port 6380 --template development
    dockbase db list
    dockbase db remove <container-id> --volumes
    dockbase db port <container-id> 5441
    dockbase db backup <container-id> -o shop.sql
    dockbase db stats
    dockbase db templates
"""

from __future__ import annotations

from pathlib import Path

import typer

from dockbase.cli.utils import (
    build_model,
    console,
    err_console,
    get_service,
    output_data,
    output_result,
    parse_env,
    print_table,
    run,
    unwrap_or_exit,
)
from dockbase.deploy.catalog import DatabaseType
from dockbase.deploy.models import DatabaseConfig

app = typer.Typer(no_args_is_help=True)


@app.command()
def types(
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """List supported database types and versions."""
    rows = [
        {
            "type": info.id.value,
            "name": f"{info.icon} {info.display_name}",
            "image": info.image_name,
            "port": info.default_port,
            "versions": list(info.versions),
        }
        for info in get_service().database_types()
    ]
    output_data(rows, as_json=json_out, title="Database Types")


@app.command()
def create(
    name: str = typer.Argument(..., help="Logical database name"),
    port: int = typer.Option(..., "--port", "-p", help="Host port to publish"),
    db_type: DatabaseType = typer.Option(DatabaseType.POSTGRES, "--type", "-t", help="Database type"),
    version: str | None = typer.Option(None, "--version", help="Image tag (default: latest known)"),
    username: str = typer.Option("", "--username", "-u"),
    password: str = typer.Option("", "--password", envvar="DOCKBASE_DB_PASSWORD"),
    memory: str | None = typer.Option(None, "--memory", help="Memory limit, e.g. 256m or 2g"),
    cpus: str | None = typer.Option(None, "--cpus", help="CPU limit in cores, e.g. 0.5"),
    env: list[str] = typer.Option([], "--env", "-e", help="Extra KEY=VALUE (repeatable)"),
    restart: str | None = typer.Option(None, "--restart", help="no | always | unless-stopped | on-failure"),
    template: str | None = typer.Option(None, "--template", help="Apply a configuration template"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Create and start a managed database container."""
    config = build_model(
        DatabaseConfig,
        name=name,
        username=username,
        password=password,
        port=port,
        version=version,
        db_type=db_type,
        memory=memory,
        cpus=cpus,
        env=parse_env(env),
        restart_policy=restart,
    )
    service = get_service()
    record = unwrap_or_exit(run(service.create_database(config, template=template)))
    if json_out:
        output_data(record, as_json=True)
        return
    console.print(
        f"[green]✓[/green] Database '{config.name}' created as [bold]{record.name}[/bold] "
        f"on port {record.port}"
    )


@app.command("list")
def list_databases(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List managed database containers."""
    result = run(get_service().list_databases())
    output_result(
        result,
        as_json=json_out,
        title="Databases",
        columns=["name", "db_type", "status", "port", "id"],
    )


@app.command()
def remove(
    container_id: str = typer.Argument(..., help="Container id or name"),
    volumes: bool = typer.Option(False, "--volumes", "-v", help="Also remove anonymous volumes"),
) -> None:
    """Stop and remove a database container."""
    name = unwrap_or_exit(run(get_service().remove_database(container_id, remove_volumes=volumes)))
    console.print(f"[green]✓[/green] Removed {name}")


@app.command()
def port(
    container_id: str = typer.Argument(..., help="Container id or name"),
    new_port: int = typer.Argument(..., min=1, max=65535, help="New host port"),
) -> None:
    """Republish a database on another host port (recreates the container)."""
    change = unwrap_or_exit(run(get_service().update_database_port(container_id, new_port)))
    console.print(f"[green]✓[/green] {change.name}: port {change.old_port} -> {change.new_port}")


@app.command()
def backup(
    container_id: str = typer.Argument(..., help="Container id or name"),
    output: Path = typer.Option(..., "--output", "-o", help="SQL file to write"),
) -> None:
    """pg_dump a running PostgreSQL database to a host file."""
    report = unwrap_or_exit(run(get_service().backup_database(container_id, output)))
    console.print(f"[green]✓[/green] Backed up {report.source} to {report.path} ({report.size_bytes} bytes)")


@app.command()
def stats(
    container_id: str | None = typer.Argument(None, help="One container (default: all running)"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show CPU, memory, network and block I/O usage."""
    service = get_service()
    columns = ["name", "cpu_percent", "memory_usage", "memory_percent", "network_rx", "network_tx"]
    if container_id:
        output_result(run(service.container_stats(container_id)), as_json=json_out, title="Stats")
        return

    batch = unwrap_or_exit(run(service.all_stats()))
    if json_out:
        output_data(batch, as_json=True)
        return
    if batch.stats:
        print_table(batch.stats, title="Container Stats", columns=columns)
    else:
        console.print("[dim]No running databases.[/dim]")
    for failure in batch.failures:
        err_console.print(f"[yellow]![/yellow] {failure.message}")


@app.command()
def templates(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List configuration templates."""
    available = unwrap_or_exit(get_service().templates())
    rows = [
        {
            "id": t.id,
            "name": f"{t.icon} {t.name}",
            "types": [db_type.value for db_type in t.configurations],
            "custom": t.custom,
            "description": t.description,
        }
        for t in available.values()
    ]
    output_data(rows, as_json=json_out, title="Templates")
