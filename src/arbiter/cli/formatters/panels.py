"""Rich panels for messages and query responses."""

from rich.panel import Panel

from arbiter.cli.formatters import console

_STYLES = {
    "info": ("Info", "blue"),
    "warning": ("Warning", "yellow"),
    "error": ("Error", "red"),
    "success": ("Success", "green"),
}


def message_panel(message: str, kind: str = "info", title: str | None = None) -> Panel:
    """Create a panel styled for ``kind`` (info, warning, error, success)."""
    default_title, color = _STYLES[kind]
    return Panel(
        f"[{kind}]{message}[/]",
        title=f"[bold {color}]{title or default_title}[/]",
        border_style=color,
        expand=False,
    )


def print_info(message: str, title: str = "Info") -> None:
    console.print(message_panel(message, "info", title))


def print_warning(message: str, title: str = "Warning") -> None:
    console.print(message_panel(message, "warning", title))


def print_error(message: str, title: str = "Error") -> None:
    console.print(message_panel(message, "error", title))


def print_success(message: str, title: str = "Success") -> None:
    console.print(message_panel(message, "success", title))


def response_panel(text: str, subtitle: str, *, degraded: bool = False) -> Panel:
    """The routed response, yellow-bordered when it is below the quality floor."""
    color = "yellow" if degraded else "green"
    return Panel(
        text,
        title=f"[bold {color}]Response[/]",
        subtitle=subtitle,
        border_style=color,
    )
