"""Rich formatters for CLI output.

This module provides a shared Console instance for consistent terminal
output across the Arbiter CLI.

Semantic Colors:
- green: success
- yellow: warning
- red: error
- blue: info
"""

from rich.console import Console
from rich.theme import Theme

ARBITER_THEME = Theme(
    {
        "success": "green",
        "warning": "yellow",
        "error": "red",
        "info": "blue",
        "muted": "dim",
        "highlight": "bold cyan",
    }
)

console = Console(theme=ARBITER_THEME)

__all__ = ["ARBITER_THEME", "console"]
