"""Query commands: route a query and rate the answer."""

from pathlib import Path
from typing import Annotated

import typer

from arbiter.cli.formatters import console
from arbiter.cli.formatters.panels import print_error, print_success, response_panel
from arbiter.cli.formatters.tables import format_money, styled_status
from arbiter.cli.runtime import run_with_engine
from arbiter.core.errors import BudgetExceededError
from arbiter.engine import ArbitrageEngine
from arbiter.routing.classifier import QueryContext


def ask(
    query: Annotated[str, typer.Argument(help="The query to route.")],
    user: Annotated[str, typer.Option("--user", "-u", help="User id to bill.")] = "local",
    subscription: Annotated[
        str | None,
        typer.Option("--subscription", "-s", help="Subscription tier (free, basic, pro, enterprise)."),
    ] = None,
    max_budget: Annotated[
        float | None,
        typer.Option("--max-budget", help="Per-request budget in USD."),
    ] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show log output.")] = False,
) -> None:
    """Route QUERY through the cheapest model chain that answers it well."""

    async def action(engine: ArbitrageEngine):
        return await engine.submit_query(
            user,
            query,
            QueryContext(user_id=user, subscription_tier=subscription, max_budget=max_budget),
        )

    result = run_with_engine(action, config_path=config_path, verbose=verbose)
    if result.is_err:
        error = result.error
        if isinstance(error, BudgetExceededError):
            print_error(
                f"{error.message} ({format_money(error.spent)} of {format_money(error.limit)} spent)",
                title="Budget exceeded",
            )
        else:
            print_error(error.message)
        raise typer.Exit(1)

    response = result.value
    subtitle = (
        f"{response.provider_id} · {styled_status(response.status.value)} · "
        f"{format_money(response.cost_incurred)} · escalations {response.escalations}"
    )
    console.print(response_panel(response.response, subtitle, degraded=response.below_quality_floor))
    console.print(f"[muted]decision id: {response.routing_decision_id}[/]")


def feedback(
    decision_id: Annotated[str, typer.Argument(help="Routing decision id printed by 'ask'.")],
    thumb: Annotated[
        str | None, typer.Option("--thumb", "-t", help="'up' or 'down'.")
    ] = None,
    rating: Annotated[
        int | None, typer.Option("--rating", "-r", min=1, max=5, help="Rating from 1 to 5.")
    ] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
) -> None:
    """Rate a routed response."""
    if thumb is None and rating is None:
        print_error("Give --thumb and/or --rating.")
        raise typer.Exit(1)

    async def action(engine: ArbitrageEngine):
        return await engine.submit_feedback(decision_id, rating=rating, thumb=thumb)

    result = run_with_engine(action, config_path=config_path)
    if result.is_err:
        print_error(result.error.message)
        raise typer.Exit(1)
    print_success(f"Feedback recorded for {decision_id}")
