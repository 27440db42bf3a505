"""
CLI utility helpers: output formatting and service construction.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import fields, is_dataclass
from typing import Any, Coroutine, NoReturn, TypeVar

import typer
from pydantic import ValidationError as ModelValidationError
from rich.console import Console
from rich.table import Table

from dockbase.core.errors import DockbaseError
from dockbase.core.result import Result
from dockbase.deploy.service import DockbaseService

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


# ── Service helpers ──────────────────────────────────────────────────────


def get_service() -> DockbaseService:
    """Build a service from the current settings."""
    return DockbaseService()


def run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def parse_env(pairs: list[str]) -> dict[str, str]:
    """``["A=1", "B=2"]`` -> ``{"A": "1", "B": "2"}``."""
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            fail(f"Invalid --env value {pair!r}, expected KEY=VALUE")
        env[key] = value
    return env


def build_model(model: type[T], **fields: Any) -> T:
    """Validate CLI input into a pydantic model, exiting on bad input."""
    try:
        return model(**fields)  # type: ignore[call-arg]
    except ModelValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
        )
        fail(f"Invalid input: {problems}")


def fail(message: str, code: str = "VALIDATION") -> NoReturn:
    err_console.print(f"[bold red]Error[/bold red] ({code}): {message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def to_dict(obj: Any) -> Any:
    """Convert dataclass / pydantic model / error / dict to plain data."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, DockbaseError):
        return obj.to_dict()
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_dict(v) for v in obj]
    return obj


def unwrap_or_exit(result: Result[T]) -> T:
    """Return the value of ``result`` or print its error and exit 1."""
    if result.is_err():
        error = result.error
        category = getattr(getattr(error, "category", None), "value", "ERROR")
        err_console.print(f"[bold red]Error[/bold red] ({category}): {error}")
        raise typer.Exit(code=1)
    return result.unwrap()


def output_result(
    result: Result[Any],
    *,
    as_json: bool = False,
    title: str = "",
    columns: list[str] | None = None,
) -> None:
    """Render a ``Result`` to the terminal."""
    data = unwrap_or_exit(result)
    output_data(data, as_json=as_json, title=title, columns=columns)


def output_data(
    data: Any,
    *,
    as_json: bool = False,
    title: str = "",
    columns: list[str] | None = None,
) -> None:
    if as_json:
        console.print_json(json.dumps(to_dict(data), default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        if all(isinstance(item, (str, int, float)) for item in data):
            for item in data:
                console.print(str(item))
            return
        print_table(data, title=title, columns=columns)
    elif isinstance(data, (str, int, float, bool)):
        console.print(str(data))
    else:
        print_dict(to_dict(data), title=title)


def print_table(items: list[Any], *, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of models/dataclasses/dicts as a Rich table."""
    rows = [to_dict(item) for item in items]
    columns = columns or list(rows[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in columns:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(_cell(row.get(col)) for col in columns))
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)
