"""Learning-loop commands: retrain, evolve, curate and inspect."""

from pathlib import Path
from typing import Annotated

import typer

from arbiter.cli.formatters import console
from arbiter.cli.formatters.panels import print_error, print_info, print_success
from arbiter.cli.formatters.tables import create_table, print_table, styled_status
from arbiter.cli.runtime import run_with_engine
from arbiter.engine import ArbitrageEngine
from arbiter.learning.models import GepaPhase
from arbiter.routing.models import parse_domain

app = typer.Typer(
    name="learn",
    help="Run learning-loop jobs.",
    no_args_is_help=True,
)

ConfigOption = Annotated[
    Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
]


@app.command()
def dpo(config_path: ConfigOption = None) -> None:
    """Generate preference pairs and recalibrate the classifier now."""

    async def action(engine: ArbitrageEngine):
        result = await engine.trigger_dpo_retrain()
        return result, await engine.dpo_stats()

    result, stats = run_with_engine(action, config_path=config_path)
    if result.is_err:
        print_error(result.error.message, title="DPO retrain failed")
        raise typer.Exit(1)

    offsets = ", ".join(f"{d}={v:+.3f}" for d, v in sorted(stats.quality_offsets.items()))
    print_success(
        f"Calibration v{result.value.version}: {stats.pair_count} pairs, "
        f"{stats.feedback_count} feedback ({stats.positive_rate:.0%} positive)\n"
        f"Quality offsets: {offsets or 'none'}"
    )


@app.command()
def gepa(config_path: ConfigOption = None) -> None:
    """Advance the GEPA cycle as far as it can go."""

    async def action(engine: ArbitrageEngine):
        return await engine.trigger_gepa_cycle()

    result = run_with_engine(action, config_path=config_path)
    if result.is_err:
        print_error(result.error.message, title="GEPA cycle failed")
        raise typer.Exit(1)

    cycle = result.value
    if cycle.phase == GepaPhase.COMPLETED:
        adopted = cycle.adopted_experiment_id or "none"
        print_success(f"Cycle {cycle.id} completed. Adopted experiment: {adopted}")
    else:
        print_info(
            f"Cycle {cycle.id} is in phase '{cycle.phase.value}'. "
            "Run again once the experiments have enough samples."
        )


@app.command()
def limi(config_path: ConfigOption = None) -> None:
    """Offer routing history to the golden example set."""

    async def action(engine: ArbitrageEngine) -> int:
        return await engine.curate_golden_examples()

    admitted = run_with_engine(action, config_path=config_path)
    print_success(f"Admitted {admitted} golden examples")


@app.command("run-pending")
def run_pending(config_path: ConfigOption = None) -> None:
    """Run every queued learning job once."""

    async def action(engine: ArbitrageEngine):
        return await engine.run_pending_jobs()

    summary = run_with_engine(action, config_path=config_path)
    if summary.total == 0:
        print_info("No pending jobs")
        return
    table = create_table("Learning jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Kind")
    table.add_column("Result")
    for item in summary.results:
        table.add_row(
            item.job_id,
            item.kind.value,
            styled_status("done" if item.success else "failed")
            + (f" {item.error_message}" if item.error_message else ""),
        )
    print_table(table)


def golden(
    domain: Annotated[
        str | None, typer.Option("--domain", "-d", help="Only this domain.")
    ] = None,
    min_quality: Annotated[float, typer.Option("--min-quality", help="Minimum quality.")] = 0.0,
    min_savings: Annotated[
        float, typer.Option("--min-savings", help="Minimum savings ratio (0-1).")
    ] = 0.0,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Rows to show.")] = 20,
    config_path: ConfigOption = None,
) -> None:
    """List golden examples, best first."""
    try:
        selected = parse_domain(domain) if domain else None
    except ValueError as e:
        print_error(f"Unknown domain: {domain}")
        raise typer.Exit(1) from e

    async def action(engine: ArbitrageEngine):
        return await engine.get_golden_examples(
            min_quality=min_quality, min_savings=min_savings, domain=selected, limit=limit
        )

    examples = run_with_engine(action, config_path=config_path)
    if not examples:
        print_info("No golden examples yet")
        return
    table = create_table(f"Golden examples ({len(examples)})")
    for column in ("Domain", "Query", "Quality", "Savings", "Tags"):
        table.add_column(column)
    for example in examples:
        table.add_row(
            example.domain.value,
            example.query[:60],
            f"{example.quality_score:.2f}",
            f"{example.savings_ratio:.0%}",
            ", ".join(example.tags),
        )
    print_table(table)


def experiments(config_path: ConfigOption = None) -> None:
    """List GEPA experiments."""

    async def action(engine: ArbitrageEngine):
        return await engine.get_experiments()

    rows = run_with_engine(action, config_path=config_path)
    if not rows:
        print_info("No experiments yet")
        return
    table = create_table("Experiments")
    for column in ("Name", "Status", "Traffic", "Samples", "Cost delta", "Quality delta"):
        table.add_column(column)
    for experiment in rows:
        metrics = experiment.metrics
        table.add_row(
            experiment.name,
            styled_status(experiment.status.value),
            f"{experiment.traffic_fraction:.0%}",
            str(metrics.samples) if metrics else "-",
            f"{metrics.cost_delta:+.5f}" if metrics else "-",
            f"{metrics.quality_delta:+.3f}" if metrics else "-",
        )
    print_table(table)
    console.print("[muted]Adopted parameters are merged into the live routing config.[/]")
