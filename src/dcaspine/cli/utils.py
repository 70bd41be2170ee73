"""
CLI utility helpers - settings overrides, wiring and output formatting.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from dcaspine.core.errors import ConfigError
from dcaspine.core.settings import DcaSettings

console = Console()
err_console = Console(stderr=True)


# ── Settings / wiring ────────────────────────────────────────────────────


def load_settings(
    database: str | None = None,
    lock_backend: str | None = None,
) -> DcaSettings:
    """Build settings from the environment plus CLI overrides.

    A configuration fault exits with code 2 before anything runs.
    """
    overrides: dict[str, Any] = {}
    if database:
        overrides["database_url"] = database
    if lock_backend:
        overrides["lock_backend"] = lock_backend
    try:
        return DcaSettings(**overrides)
    except ConfigError as e:
        err_console.print(f"[bold red]Config error[/bold red]: {e.message}")
        raise typer.Exit(code=2) from e


def build_service(settings: DcaSettings) -> Any:
    from dcaspine.scheduling import create_scheduler

    return create_scheduler(settings)


# ── Output helpers ───────────────────────────────────────────────────────


def output_dict(data: dict[str, Any], *, as_json: bool = False, title: str = "") -> None:
    """Render a flat dict as JSON or a two-column table."""
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    table = Table(title=title or None, show_header=False, pad_edge=False)
    table.add_column("key", style="bold")
    table.add_column("value", overflow="fold")
    for key, value in data.items():
        table.add_row(str(key), "" if value is None else str(value))
    console.print(table)


def output_rows(rows: list[dict[str, Any]], *, as_json: bool = False, title: str = "") -> None:
    """Render a list of flat dicts as JSON or a table."""
    if as_json:
        console.print_json(json.dumps(rows, default=str))
        return
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if v is None else str(v) for v in row.values()))
    console.print(table)


def fail(message: str, code: int = 1) -> typer.Exit:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    return typer.Exit(code=code)
