"""
CLI: ``dockbase images`` — local images.
"""

from __future__ import annotations

import typer

from dockbase.cli.utils import console, get_service, output_result, run, unwrap_or_exit

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_images(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List local images."""
    result = run(get_service().list_images())
    output_result(result, as_json=json_out, title="Images", columns=["tags", "size", "created", "id"])


@app.command()
def pull(image: str = typer.Argument(..., help="Image reference, e.g. postgres:16")) -> None:
    """Pull an image unless it is already present."""
    pulled = unwrap_or_exit(run(get_service().pull_image(image)))
    console.print(f"[green]✓[/green] {image} {'pulled' if pulled else 'already present'}")


@app.command()
def remove(
    image: str = typer.Argument(...),
    force: bool = typer.Option(False, "--force", "-f"),
) -> None:
    """Remove an image."""
    unwrap_or_exit(run(get_service().remove_image(image, force=force)))
    console.print(f"[green]✓[/green] Removed image {image}")
