"""Reporting commands: spend and curriculum per user."""

from pathlib import Path
from typing import Annotated

import typer

from arbiter.budget.models import CostStats
from arbiter.cli.formatters import console
from arbiter.cli.formatters.tables import (
    create_key_value_table,
    create_table,
    format_money,
    print_table,
)
from arbiter.cli.runtime import run_with_engine
from arbiter.engine import ArbitrageEngine, CurriculumStatus


def stats(
    user: Annotated[str, typer.Argument(help="User id.")],
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
) -> None:
    """Show a user's spend this period, projection and breakdown."""

    async def action(engine: ArbitrageEngine) -> CostStats:
        return await engine.get_cost_stats(user)

    cost = run_with_engine(action, config_path=config_path)
    projection = cost.projection
    summary = {
        "Period": cost.period_key,
        "Spent": f"{format_money(cost.spent_this_period)} of {format_money(cost.limit)}",
        "Remaining": format_money(cost.remaining),
        "Requests": cost.request_count,
        "Avg cost / request": format_money(cost.average_cost_per_request),
        "Daily burn rate": format_money(projection.daily_burn_rate),
        "Projected month end": format_money(projection.projected_month_end),
        "Alerts fired": ", ".join(f"{t:.0%}" for t in cost.alerts_fired) or "none",
    }
    print_table(create_key_value_table(summary, f"Cost stats: {user}"))
    if projection.will_exceed:
        console.print("[warning]Projected spend exceeds the monthly limit.[/]")

    if cost.breakdown:
        table = create_table("Spend by provider and tier")
        for column in ("Provider", "Tier", "Requests", "Tokens", "Cost"):
            table.add_column(column, justify="left" if column == "Provider" else "right")
        for row in cost.breakdown:
            table.add_row(
                row.provider_id or "-",
                str(row.tier) if row.tier is not None else "-",
                str(row.requests),
                str(row.tokens),
                format_money(row.amount),
            )
        print_table(table)


def curriculum(
    user: Annotated[str, typer.Argument(help="User id.")],
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
) -> None:
    """Show a user's curriculum level."""

    async def action(engine: ArbitrageEngine) -> CurriculumStatus:
        return await engine.get_curriculum_status(user)

    status = run_with_engine(action, config_path=config_path)
    data = {
        "Level": status.level.value,
        "Success rate": f"{status.success_rate:.0%}",
        "Consecutive successes": status.consecutive_successes,
        "Consecutive failures": status.consecutive_failures,
    }
    if status.ceiling is not None:
        data["Max required quality"] = status.ceiling.max_required_quality
        data["Max estimated tokens"] = status.ceiling.max_estimated_tokens
    print_table(create_key_value_table(data, f"Curriculum: {user}"))
