"""Config command group for Arbiter."""

from pathlib import Path
from typing import Annotated

import typer

from arbiter.cli.formatters.panels import print_error, print_success
from arbiter.cli.formatters.tables import create_key_value_table, create_table, print_table
from arbiter.config.loader import create_default_config, load_config_or_default
from arbiter.config.models import get_config_dir
from arbiter.core.errors import ConfigError

app = typer.Typer(
    name="config",
    help="Manage Arbiter configuration.",
    no_args_is_help=True,
)


@app.command()
def init(
    config_dir: Annotated[
        Path | None,
        typer.Option("--dir", help="Config directory (default: ~/.arbiter)."),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite an existing config.yaml."),
    ] = False,
) -> None:
    """Write a config.yaml with every default spelled out."""
    try:
        path = create_default_config(config_dir, overwrite=force)
    except ConfigError as e:
        print_error(f"{e.message}\nUse --force to overwrite.")
        raise typer.Exit(1) from e
    print_success(f"Configuration written to {path}")


@app.command()
def show(
    section: Annotated[
        str | None,
        typer.Argument(help="Section to display (e.g. 'routing', 'budgets', 'registry')."),
    ] = None,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config.yaml."),
    ] = None,
) -> None:
    """Display the effective configuration."""
    try:
        config = load_config_or_default(config_path)
    except ConfigError as e:
        print_error(e.message)
        raise typer.Exit(1) from e

    if section == "registry":
        table = create_table("Model registry")
        for column in ("Provider", "Model", "Tier", "$/1K tokens", "Quality"):
            table.add_column(column)
        for c in sorted(config.registry, key=lambda c: (c.tier, c.cost_per_1k_tokens)):
            table.add_row(
                c.provider_id,
                c.model,
                str(c.tier),
                f"{c.cost_per_1k_tokens:.5f}",
                f"{c.quality_score:.2f}",
            )
        print_table(table)
        return

    data = config.model_dump(mode="json")
    if section is not None:
        if section not in data:
            print_error(f"Unknown section: {section}. Choose from: {', '.join(data)}")
            raise typer.Exit(1)
        print_table(create_key_value_table(data[section], f"[{section}]"))
        return

    summary = {
        "config_dir": str(get_config_dir()),
        "database": config.persistence.database_path,
        "log_level": config.logging.level,
        "registry": f"{len(config.registry)} candidates",
        "acceptance_threshold": config.routing.acceptance_threshold,
        "default_subscription": config.budgets.default_subscription,
    }
    print_table(create_key_value_table(summary, "Current Configuration"))
