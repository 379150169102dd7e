"""Output formatting for CLI."""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
error_console = Console(stderr=True)

# Columns rendered as row labels in tables
KEY_COLUMNS = ("shard_id", "name", "k", "as_of")


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float):
        return f"{value:.6g}"
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return str(value)


def format_bytes(size: float) -> str:
    """Human readable byte size."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def print_table(
    data: list[dict[str, Any]],
    columns: list[str] | None = None,
    title: str | None = None,
) -> None:
    """Print a list of dicts as a table."""
    if not data:
        console.print("[dim]No rows[/dim]")
        return

    columns = columns or list(data[0])
    table = Table(title=title, box=box.SIMPLE_HEAVY)
    for col in columns:
        numeric = isinstance(data[0].get(col), (int, float)) and not isinstance(data[0].get(col), bool)
        table.add_column(
            col,
            style="cyan" if col in KEY_COLUMNS else None,
            justify="right" if numeric else "left",
        )

    for row in data:
        table.add_row(*(_format_value(row.get(col)) for col in columns))

    console.print(table)


def print_dict(data: dict[str, Any], title: str | None = None) -> None:
    """Print a single dict as a key-value table."""
    table = Table(title=title, box=box.SIMPLE_HEAVY, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key.replace("_", " "), _format_value(value))
    console.print(table)


def print_success(message: str) -> None:
    console.print(f"[green]{message}[/green]")


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]Error: {message}[/red]")


def print_warning(message: str) -> None:
    console.print(f"[yellow]Warning: {message}[/yellow]")


def print_info(message: str) -> None:
    console.print(f"[dim]{message}[/dim]")
