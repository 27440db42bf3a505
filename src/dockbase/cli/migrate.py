"""
CLI: ``dockbase migrate`` — move PostgreSQL databases into managed containers.

Usage::

    dockbase migrate sources --source-host db.internal --source-user postgres
    dockbase migrate run shop --source-host localhost --target-name shop_copy
    dockbase migrate drop-source shop --source-host localhost --force
"""

from __future__ import annotations

import typer

from dockbase.cli.utils import (
    build_model,
    console,
    err_console,
    get_service,
    output_data,
    output_result,
    print_table,
    run,
)
from dockbase.core.errors import PipelineError
from dockbase.deploy.models import MigrationRequest
from dockbase.deploy.results import MigrationResult, OverallStatus

app = typer.Typer(no_args_is_help=True)

_SOURCE_HOST = typer.Option("localhost", "--source-host", "-H", help="Source server host")
_SOURCE_PORT = typer.Option(5432, "--source-port", "-P", help="Source server port")
_SOURCE_USER = typer.Option("postgres", "--source-user", "-U", help="Source server user")
_SOURCE_PASSWORD = typer.Option(
    "", "--source-password", envvar="DOCKBASE_SOURCE_PASSWORD", help="Source server password"
)


def _print_steps(result: MigrationResult) -> None:
    print_table(
        [
            {
                "step": s.step.value,
                "status": s.status.value,
                "seconds": f"{s.duration_seconds:.1f}",
                "detail": s.detail,
            }
            for s in result.steps
        ],
        title=f"Migration {result.migration_id}",
    )


@app.command("run")
def run_migration(
    source_database: str = typer.Argument(..., help="Database to migrate"),
    source_host: str = _SOURCE_HOST,
    source_port: int = _SOURCE_PORT,
    source_user: str = _SOURCE_USER,
    source_password: str = _SOURCE_PASSWORD,
    target_name: str | None = typer.Option(None, "--target-name", help="Name of the new database"),
    target_password: str | None = typer.Option(
        None, "--target-password", help="Password of the new database (default: source password)"
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Dump a source database and restore it into a new container."""
    request = build_model(
        MigrationRequest,
        source_host=source_host,
        source_port=source_port,
        source_user=source_user,
        source_password=source_password,
        source_database=source_database,
        target_name=target_name,
        target_password=target_password,
    )
    result = run(get_service().migrate_database(request))

    if result.is_err():
        error = result.error
        partial = error.result if isinstance(error, PipelineError) else None
        if json_out:
            output_data({"ok": False, "error": error.to_dict(), "result": partial}, as_json=True)
        elif isinstance(partial, MigrationResult) and partial.steps:
            _print_steps(partial)
        err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error}")
        raise typer.Exit(code=1)

    migration = result.unwrap()
    if json_out:
        output_data(migration, as_json=True)
        return
    _print_steps(migration)
    for warning in migration.warnings:
        err_console.print(f"[yellow]![/yellow] {warning}")
    colour = "green" if migration.overall_status == OverallStatus.PASSED else "yellow"
    console.print(
        f"[{colour}]{migration.overall_status.value}[/{colour}] "
        f"{migration.source} → {migration.container_name} on port {migration.port}"
    )
    if migration.verification:
        console.print(f"[dim]{migration.verification}[/dim]")


@app.command("list")
def list_migrated(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List databases migrated by this process."""
    output_data(get_service().list_migrated(), as_json=json_out, title="Migrated Databases")


@app.command()
def sources(
    source_host: str = _SOURCE_HOST,
    source_port: int = _SOURCE_PORT,
    source_user: str = _SOURCE_USER,
    source_password: str = _SOURCE_PASSWORD,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List databases on a source server."""
    request = build_model(
        MigrationRequest,
        source_host=source_host,
        source_port=source_port,
        source_user=source_user,
        source_password=source_password,
        source_database="postgres",
    )
    result = run(get_service().list_source_databases(request))
    output_result(result, as_json=json_out, title=f"Databases on {source_host}:{source_port}")


@app.command("drop-source")
def drop_source(
    source_database: str = typer.Argument(..., help="Database to drop on the source server"),
    source_host: str = _SOURCE_HOST,
    source_port: int = _SOURCE_PORT,
    source_user: str = _SOURCE_USER,
    source_password: str = _SOURCE_PASSWORD,
    force: bool = typer.Option(False, "--force", help="Drop even without a recorded migration"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Drop a database on the source server."""
    if not yes:
        typer.confirm(f"Drop database '{source_database}' on {source_host}?", abort=True)
    request = build_model(
        MigrationRequest,
        source_host=source_host,
        source_port=source_port,
        source_user=source_user,
        source_password=source_password,
        source_database=source_database,
    )
    result = run(get_service().drop_source_database(request, force=force))
    output_result(result)
