"""
Root Typer application for dockbase.
"""

from __future__ import annotations

import typer
from typer import Typer

from dockbase import __version__
from dockbase.core.logging import configure_logging
from dockbase.core.settings import get_settings

app = Typer(
    name="dockbase",
    help="dockbase — provision, migrate and compose database containers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"dockbase {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (default from settings)."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines on stderr."),
) -> None:
    """dockbase CLI — databases, migrations, compose projects, volumes and images."""
    settings = get_settings()
    configure_logging(
        level=(log_level or settings.log_level).upper(),
        json_format=json_logs or settings.log_format == "json",
        service="dockbase",
    )


# ── Sub-command registration ─────────────────────────────────────────────

from dockbase.cli.compose import app as compose_app  # noqa: E402
from dockbase.cli.db import app as db_app  # noqa: E402
from dockbase.cli.images import app as images_app  # noqa: E402
from dockbase.cli.migrate import app as migrate_app  # noqa: E402
from dockbase.cli.volumes import app as volumes_app  # noqa: E402

app.add_typer(db_app, name="db", help="Managed database containers.")
app.add_typer(migrate_app, name="migrate", help="Migrate PostgreSQL databases into containers.")
app.add_typer(compose_app, name="compose", help="Compose manifests and projects.")
app.add_typer(volumes_app, name="volumes", help="Engine volumes.")
app.add_typer(images_app, name="images", help="Local images.")
