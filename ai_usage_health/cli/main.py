"""
CLI interface for AI Usage Health.

Provides command-line access to ingestion, the recommendation ledger and
health scoring.
"""

import json
import logging
import sys
from dataclasses import dataclass
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ai_usage_health.config.loader import HealthConfig, resolve_config
from ai_usage_health.core.aggregator import ingest_session
from ai_usage_health.core.errors import HealthError, StorageError
from ai_usage_health.core.fleet import aggregate_health_stats, compare_machines
from ai_usage_health.core.health import HealthService
from ai_usage_health.core.insights import get_health_grade
from ai_usage_health.core.matching import get_matcher
from ai_usage_health.core.validation import parse_session_report
from ai_usage_health.storage.models import (
    HealthScore,
    RecommendationCategory,
    RecommendationStatus,
    Trend,
)
from ai_usage_health.storage.repository import HealthRepository, get_repository

app = typer.Typer()
machine_app = typer.Typer(help="Manage registered machines.")
recommend_app = typer.Typer(help="Manage the recommendation ledger.")
app.add_typer(machine_app, name="machine")
app.add_typer(recommend_app, name="recommend")

console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

TREND_STYLES = {
    Trend.IMPROVING: "[green]▲ improving[/]",
    Trend.STABLE: "[blue]● stable[/]",
    Trend.DECLINING: "[red]▼ declining[/]",
}


@dataclass
class CliState:
    config: HealthConfig
    repository: HealthRepository


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {escape(message)}")
    sys.exit(EXIT_CODE_FAIL)


def _handle_error(e: HealthError) -> None:
    if isinstance(e, StorageError) and "no such table" in str(e).lower():
        console.print("\n[bold yellow]Database is not initialized[/]")
        console.print("Run `ai-usage-health init` to create it.\n")
        sys.exit(EXIT_CODE_FAIL)
    _fail(str(e))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Usage Health CLI."""
    try:
        health_config = resolve_config(config)
    except (OSError, ValueError) as e:
        _fail(f"Invalid configuration: {e}")

    _configure_logging("DEBUG" if verbose else health_config.logging.level.value)
    ctx.obj = CliState(
        config=health_config,
        repository=get_repository(db or health_config.database.path),
    )

    if ctx.invoked_subcommand is None:
        console.print("AI Usage Health - Use --help to see available commands")


def _service(state: CliState) -> HealthService:
    return HealthService(
        repository=state.repository,
        waste_threshold=state.config.insights.waste_threshold,
        history_limit=state.config.history.limit,
        stale_after_hours=state.config.history.stale_after_hours,
    )


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Usage Health database."""
    try:
        ctx.obj.repository.initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except HealthError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@machine_app.command("add")
def machine_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name of the machine"),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Host name"),
    platform: Optional[str] = typer.Option(None, "--platform", help="Operating system"),
):
    """Register a machine and print its id."""
    try:
        machine = ctx.obj.repository.add_machine(name, hostname=hostname, platform=platform)
    except HealthError as e:
        _handle_error(e)
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Registered machine {machine.name}: {machine.id}")


@machine_app.command("list")
def machine_list(ctx: typer.Context):
    """List registered machines."""
    try:
        machines = ctx.obj.repository.list_machines()
    except HealthError as e:
        _handle_error(e)

    if not machines:
        console.print("[dim]No machines registered.[/]")
        return

    table = Table(title="Machines")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Hostname")
    table.add_column("Platform")
    for machine in machines:
        table.add_row(machine.id, machine.name, machine.hostname or "-", machine.platform or "-")
    console.print(table)


@app.command()
def track(
    ctx: typer.Context,
    report_file: str = typer.Argument(..., help="JSON session report file, or '-' for stdin"),
):
    """Ingest a session report and update usage aggregates."""
    try:
        if report_file == "-":
            payload = json.load(sys.stdin)
        else:
            with open(report_file, 'r', encoding='utf-8') as f:
                payload = json.load(f)
    except OSError as e:
        _fail(f"Cannot read session report: {e}")
    except json.JSONDecodeError as e:
        _fail(f"Session report is not valid JSON: {e}")

    state: CliState = ctx.obj
    try:
        report = parse_session_report(payload)
        result = ingest_session(
            report,
            state.repository,
            matcher=get_matcher(state.config.matching.strategy),
        )
    except HealthError as e:
        _handle_error(e)

    console.print(
        f"[green]✓[/] Session {report.session_id} tracked: "
        f"{result.patterns_tracked} pattern(s), {result.technologies_tracked} technology(ies)"
    )


@recommend_app.command("add")
def recommend_add(
    ctx: typer.Context,
    machine_id: str = typer.Argument(..., help="Machine the recommendation targets"),
    category: RecommendationCategory = typer.Option(..., "--category", help="Recommendation category"),
    savings: int = typer.Option(0, "--savings", min=0, help="Estimated monthly token savings"),
    title: str = typer.Option("", "--title", help="Short description"),
):
    """Add an active recommendation to the ledger."""
    try:
        rec = ctx.obj.repository.add_recommendation(
            machine_id, category, estimated_token_savings=savings, title=title
        )
    except HealthError as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Added {rec.category.value} recommendation {rec.id}")


@recommend_app.command("status")
def recommend_status(
    ctx: typer.Context,
    recommendation_id: str = typer.Argument(..., help="Recommendation id"),
    status: RecommendationStatus = typer.Argument(..., help="New status"),
):
    """Change a recommendation's status. Terminal statuses are final."""
    try:
        rec = ctx.obj.repository.update_recommendation_status(recommendation_id, status)
    except HealthError as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Recommendation {rec.id} is now {rec.status.value}")


@app.command()
def score(
    ctx: typer.Context,
    machine_id: str = typer.Argument(..., help="Machine to score"),
    recalculate: bool = typer.Option(
        False,
        "--recalculate",
        "-r",
        help="Always compute a fresh snapshot"
    ),
    refresh: bool = typer.Option(
        False,
        "--refresh",
        help="Recalculate only if the latest snapshot is older than history.stale_after_hours"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """
    Show the optimization health score of a machine.

    A score is calculated automatically the first time a machine is queried.
    Use --recalculate to append a fresh snapshot, or --refresh to append one
    only when the latest is stale.
    """
    service = _service(ctx.obj)
    try:
        if recalculate:
            service.recalculate(machine_id)
        elif refresh:
            service.refresh_if_stale(machine_id)
        report = service.get_health_report(machine_id)
    except HealthError as e:
        _handle_error(e)

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return

    _display_score(report.current)
    _display_history(report.history)

    console.print("\n[bold]Insights[/bold]")
    for insight in report.insights:
        console.print(f"  • {insight}")


def _display_score(current: HealthScore) -> None:
    grade = get_health_grade(current.composite)
    console.print("\n[bold]Optimization Health Score[/bold]")
    console.print("-" * 40)
    console.print(
        f"Score: [bold {grade.color}]{current.composite}[/] "
        f"(grade {grade.grade}, {grade.label}) {TREND_STYLES[current.trend]}"
    )
    if current.previous_score is not None:
        console.print(f"Previous score: {current.previous_score}")

    table = Table(show_header=True)
    table.add_column("Category")
    table.add_column("Score", justify="right")
    table.add_row("MCP servers", str(current.mcp_score))
    table.add_row("Skills", str(current.skill_score))
    table.add_row("Context", str(current.context_score))
    table.add_row("Patterns", str(current.pattern_score))
    console.print(table)

    console.print(
        f"Active recommendations: {current.active_recommendations}  "
        f"Applied: {current.applied_recommendations}"
    )
    console.print(f"Estimated waste: {_format_tokens(current.estimated_waste)} tokens/month")
    console.print(f"Estimated savings: {_format_tokens(current.estimated_savings)} tokens/month")


def _display_history(history) -> None:
    if len(history) < 2:
        return
    table = Table(title="History")
    table.add_column("Timestamp")
    table.add_column("Score", justify="right")
    table.add_column("Trend")
    for snapshot in history:
        table.add_row(
            snapshot.timestamp.strftime("%Y-%m-%d %H:%M"),
            str(snapshot.composite),
            snapshot.trend.value,
        )
    console.print(table)


def _format_tokens(amount: int) -> str:
    """Format a token count with thousands separators."""
    return f"{amount:,}"


@app.command()
def quick(
    ctx: typer.Context,
    machine_id: str = typer.Argument(..., help="Machine to check"),
):
    """Summarize the latest score without recalculating it."""
    try:
        check = _service(ctx.obj).quick_check(machine_id)
    except HealthError as e:
        _handle_error(e)

    console.print(f"Score: {check.score} {TREND_STYLES[check.trend]}")
    console.print(f"Active issues: {check.active_issues}")
    console.print(f"Potential savings: {_format_tokens(check.potential_savings)} tokens/month")
    if check.last_updated is not None:
        console.print(f"Last updated: {check.last_updated.strftime('%Y-%m-%d %H:%M')} UTC")
    if check.needs_recalculation:
        console.print("[yellow]Score is stale.[/] Run `ai-usage-health score --refresh` to update it.")


@app.command()
def patterns(
    ctx: typer.Context,
    machine_id: str = typer.Argument(..., help="Machine to inspect"),
):
    """Show usage patterns and technology usage for a machine."""
    repository: HealthRepository = ctx.obj.repository
    try:
        if not repository.machine_exists(machine_id):
            _fail(f"Machine not found: {machine_id}")
        usage_patterns = repository.list_usage_patterns(machine_id)
        technologies = repository.list_technology_usage(machine_id)
    except HealthError as e:
        _handle_error(e)

    if not usage_patterns and not technologies:
        console.print("\n[bold yellow]No session data tracked yet[/]")
        console.print("Run `ai-usage-health track <report.json>` to ingest a session.\n")
        return

    pattern_table = Table(title="Usage Patterns")
    pattern_table.add_column("Pattern")
    pattern_table.add_column("Occurrences", justify="right")
    pattern_table.add_column("Confidence", justify="right")
    pattern_table.add_column("Projects", justify="right")
    pattern_table.add_column("Last seen")
    for p in usage_patterns:
        pattern_table.add_row(
            p.pattern_type,
            str(p.occurrences),
            f"{p.confidence:.2f}",
            str(len(p.project_ids)),
            p.last_seen.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(pattern_table)

    tech_table = Table(title="Technologies")
    tech_table.add_column("Technology")
    tech_table.add_column("Sessions", justify="right")
    tech_table.add_column("Commands", justify="right")
    tech_table.add_column("Projects", justify="right")
    tech_table.add_column("Last used")
    for t in technologies:
        tech_table.add_row(
            t.technology,
            str(t.session_count),
            str(t.command_count),
            str(t.project_count),
            t.last_used.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(tech_table)


@app.command()
def fleet(ctx: typer.Context):
    """Summarize the latest health scores across all machines."""
    try:
        stats = aggregate_health_stats(ctx.obj.repository)
    except HealthError as e:
        _handle_error(e)

    console.print("\n[bold]Fleet Health Summary[/bold]")
    console.print("-" * 40)
    console.print(f"Machines: {stats.machine_count}")
    console.print(f"Average score: {stats.average_score}")
    console.print(f"Highest / lowest: {stats.highest_score} / {stats.lowest_score}")
    console.print(f"Active issues: {stats.total_active_issues}")
    console.print(f"Potential savings: {_format_tokens(stats.total_potential_savings)} tokens/month")
    distribution = stats.score_distribution
    console.print(
        f"Excellent: {distribution['excellent']}  Good: {distribution['good']}  "
        f"Fair: {distribution['fair']}  Needs work: {distribution['needs_work']}"
    )


@app.command()
def compare(
    ctx: typer.Context,
    machine_a: str = typer.Argument(..., help="First machine"),
    machine_b: str = typer.Argument(..., help="Second machine"),
):
    """Compare the current scores of two machines without saving snapshots."""
    try:
        comparison = compare_machines(machine_a, machine_b, ctx.obj.repository)
    except HealthError as e:
        _handle_error(e)

    table = Table(title="Machine Comparison")
    table.add_column("Category")
    table.add_column(machine_a, justify="right")
    table.add_column(machine_b, justify="right")
    table.add_column("Diff", justify="right")
    first, second = comparison.machine1, comparison.machine2
    table.add_row("Composite", str(first.composite), str(second.composite), f"{comparison.total_diff:+d}")
    table.add_row("MCP servers", str(first.mcp_score), str(second.mcp_score), f"{comparison.mcp_diff:+d}")
    table.add_row("Skills", str(first.skill_score), str(second.skill_score), f"{comparison.skill_diff:+d}")
    table.add_row("Context", str(first.context_score), str(second.context_score), f"{comparison.context_diff:+d}")
    table.add_row("Patterns", str(first.pattern_score), str(second.pattern_score), f"{comparison.pattern_diff:+d}")
    console.print(table)

    winners = {"machine1": machine_a, "machine2": machine_b}
    if comparison.winner == "tie":
        console.print("Result: tie")
    else:
        console.print(f"Result: {winners[comparison.winner]} scores higher")


if __name__ == "__main__":
    app()
