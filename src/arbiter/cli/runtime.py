"""Engine lifecycle for CLI commands.

Each command opens an engine, runs one coroutine against it and closes
it again. ``open_engine`` is the single seam tests replace.
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import typer

from arbiter.cli.formatters.panels import print_error
from arbiter.config.loader import load_config_or_default, resolve_log_path
from arbiter.core.errors import ArbiterError
from arbiter.engine import ArbitrageEngine
from arbiter.observability.logging import LoggingConfig, configure_logging, set_console_logging


async def open_engine(config_path: Path | None = None) -> ArbitrageEngine:
    config = load_config_or_default(config_path)
    settings = config.logging
    configure_logging(
        LoggingConfig.from_settings(
            settings.level,
            resolve_log_path(config),
            file_logging=settings.file_logging,
            max_log_days=settings.max_log_days,
        )
    )
    return await ArbitrageEngine.open(config)


def run_with_engine[T](
    action: Callable[[ArbitrageEngine], Awaitable[T]],
    *,
    config_path: Path | None = None,
    verbose: bool = False,
) -> T:
    """Run ``action`` against a freshly opened engine.

    Raises:
        typer.Exit: With code 1 when the engine cannot be opened or ``action``
            raises an ArbiterError.
    """
    set_console_logging(verbose)

    async def _run() -> T:
        engine = await open_engine(config_path)
        async with engine:
            return await action(engine)

    try:
        return asyncio.run(_run())
    except ArbiterError as e:
        print_error(e.message)
        raise typer.Exit(1) from e
