"""Rich tables for structured data display."""

from collections.abc import Mapping
from typing import Any

from rich.table import Table

from arbiter.cli.formatters import console


def create_table(
    title: str | None = None,
    *,
    show_header: bool = True,
    border_style: str = "blue",
    header_style: str = "bold cyan",
) -> Table:
    """Create a Rich Table with consistent Arbiter styling.

    Example:
        table = create_table("Spend by provider")
        table.add_column("Provider", style="cyan")
        table.add_column("Cost", justify="right")
        table.add_row("groq-llama-8b", "$0.0012")
        print_table(table)
    """
    return Table(
        title=title,
        show_header=show_header,
        border_style=border_style,
        header_style=header_style,
        row_styles=["", "dim"],
    )


def create_key_value_table(data: Mapping[str, Any], title: str | None = None) -> Table:
    table = create_table(title, show_header=False)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(str(key), str(value))
    return table


def status_style(status: str) -> str:
    """Semantic style for a status value."""
    status_lower = status.lower()
    if status_lower in ("accepted", "adopted", "done", "completed", "running"):
        return "success"
    if status_lower in ("pending", "proposed", "concluded", "exhausted", "test"):
        return "warning"
    if status_lower in ("failed", "rejected", "budget_exceeded", "cancelled"):
        return "error"
    return ""


def styled_status(status: str) -> str:
    style = status_style(status)
    return f"[{style}]{status}[/]" if style else status


def format_money(amount: float) -> str:
    return f"${amount:,.4f}" if amount < 1 else f"${amount:,.2f}"


def print_table(table: Table) -> None:
    console.print(table)
