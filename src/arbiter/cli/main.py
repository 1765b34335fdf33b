"""Arbiter CLI main entry point.

This module defines the main Typer application and registers the
command groups and top-level commands.
"""

from typing import Annotated

import typer

from arbiter import __version__
from arbiter.cli.commands import config, learn, query, report
from arbiter.cli.formatters import console

app = typer.Typer(
    name="arbiter",
    help="Arbiter - AI arbitrage routing and cascade execution",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.add_typer(config.app, name="config")
app.add_typer(learn.app, name="learn")
app.command()(query.ask)
app.command()(query.feedback)
app.command()(report.stats)
app.command()(report.curriculum)
app.command()(learn.golden)
app.command()(learn.experiments)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold cyan]Arbiter[/] version [green]{__version__}[/]")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = None,
) -> None:
    """Arbiter - route each query to the cheapest model that answers it well.

    Use [bold cyan]arbiter COMMAND --help[/] for command-specific help.
    """


__all__ = ["app", "main"]
