"""
CLI interface for token-ledger.

Read-only reports over the event log (session stats, top agents,
summaries, cost reports) plus the two maintenance operations, retention
cleanup and transcript backfill.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from token_ledger.config.loader import AnalyticsConfig, load_config
from token_ledger.core.backfill import BackfillEngine
from token_ledger.core.context import AnalyticsContext
from token_ledger.core.pricing import format_cost
from token_ledger.utils.logger import get_logger, setup_logging

app = typer.Typer()
console = Console()
logger = get_logger("cli")

EXIT_CODE_OK = 0
EXIT_CODE_ERROR = 1


def _config(ctx: typer.Context) -> AnalyticsConfig:
    return ctx.obj["config"]


def _fail(message: str) -> None:
    logger.debug("Command failed: %s", message, exc_info=True)
    console.print(f"[red]Error:[/] {escape(message)}")
    sys.exit(EXIT_CODE_ERROR)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Also write logs to this file"
    )
):
    """Token usage analytics."""
    setup_logging(verbose=verbose, log_file=log_file)
    try:
        ctx.obj = {"config": load_config(config)}
    except Exception as e:
        _fail(f"invalid configuration: {e}")

    if ctx.invoked_subcommand is None:
        console.print("token-ledger - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Show where state lives and which pricing source is active."""
    try:
        analytics = AnalyticsContext(_config(ctx))
        adapter = analytics.report_adapter

        table = Table(title="token-ledger status", show_header=False)
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("State directory", str(analytics.paths.state_dir))
        table.add_row("Event log", "present" if analytics.event_log.exists() else "missing")
        table.add_row("Log lines", str(analytics.event_log.line_count()))
        if adapter is not None and adapter.is_available:
            table.add_row("Pricing", f"{analytics.pricing.name} ({adapter.version})")
        else:
            table.add_row("Pricing", analytics.pricing.name)

        analytics.dedup.load()
        dedup_stats = analytics.dedup.get_stats()
        table.add_row("Backfilled events", str(dedup_stats["total_processed"]))
        console.print(table)
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


@app.command()
def stats(ctx: typer.Context):
    """Totals across every session."""
    try:
        analytics = AnalyticsContext(_config(ctx))
        all_stats = analytics.tracker.get_all_stats()

        if all_stats.entry_count == 0:
            console.print("\n[bold yellow]No token usage recorded yet[/]\n")
            sys.exit(EXIT_CODE_OK)

        console.print("\n[bold]Token Usage[/bold]")
        console.print("-" * 40)
        console.print(f"Sessions: {all_stats.session_count}")
        console.print(f"Entries: {all_stats.entry_count}")
        console.print(f"Input tokens: {all_stats.total_input_tokens:,}")
        console.print(f"Output tokens: {all_stats.total_output_tokens:,}")
        console.print(f"Cache write tokens: {all_stats.total_cache_creation:,}")
        console.print(f"Cache read tokens: {all_stats.total_cache_read:,}")
        console.print(f"Total cost: {format_cost(all_stats.total_cost)}")
        if all_stats.first_entry:
            console.print(f"Period: {all_stats.first_entry} .. {all_stats.last_entry}")

        table = Table(title="By model")
        table.add_column("Model")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for model, bucket in sorted(all_stats.by_model.items(), key=lambda item: item[1].cost, reverse=True):
            table.add_row(model, f"{bucket.tokens:,}", format_cost(bucket.cost))
        console.print(table)
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


def _print_agents(title: str, agents: List[Dict[str, object]]) -> None:
    if not agents:
        console.print("\n[dim]No agent usage found.[/]")
        return
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Agent")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for rank, agent in enumerate(agents, 1):
        table.add_row(str(rank), str(agent["agent"]), f"{agent['tokens']:,}", format_cost(agent["cost"]))
    console.print(table)


@app.command("top-agents")
def top_agents(
    ctx: typer.Context,
    session: Optional[str] = typer.Option(
        None,
        "--session",
        "-s",
        help="Only rank agents of this session"
    ),
    limit: int = typer.Option(
        5,
        "--limit",
        "-n",
        min=1,
        help="Number of agents to show"
    )
):
    """Most expensive agents."""
    try:
        if session:
            analytics = AnalyticsContext(_config(ctx), session_id=session)
            if analytics.tracker.load_session_stats(session) is None:
                console.print(f"\n[bold yellow]No usage recorded for session {session}[/]\n")
                sys.exit(EXIT_CODE_OK)
            _print_agents(f"Top agents in {session}", analytics.tracker.get_top_agents(limit))
        else:
            analytics = AnalyticsContext(_config(ctx))
            _print_agents("Top agents (all sessions)", analytics.tracker.get_top_agents_all_sessions(limit))
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


@app.command()
def summary(
    ctx: typer.Context,
    session: str = typer.Argument(..., help="Session id"),
    rebuild: bool = typer.Option(
        False,
        "--rebuild",
        help="Ignore the cached summary and rebuild it from the log"
    )
):
    """Cached analytics summary of one session."""
    try:
        analytics = AnalyticsContext(_config(ctx))
        if rebuild:
            result = analytics.summaries.rebuild_analytics_summary(session)
        else:
            result = analytics.summaries.load_analytics_fast(session)

        totals = result.totals
        console.print(f"\n[bold]Session:[/bold] {result.session_id}")
        console.print(f"Input tokens: {totals.input_tokens:,}")
        console.print(f"Output tokens: {totals.output_tokens:,}")
        console.print(f"Cache write tokens: {totals.cache_creation_tokens:,}")
        console.print(f"Cache read tokens: {totals.cache_read_tokens:,}")
        console.print(f"Estimated cost: {format_cost(totals.estimated_cost)}")
        console.print(f"Cache hit rate: {result.cache_hit_rate:.1f}%")
        _print_agents("Top agents", [a.to_dict() for a in result.top_agents])
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


@app.command()
def recent(
    ctx: typer.Context,
    session: Optional[str] = typer.Option(
        None,
        "--session",
        "-s",
        help="Only show records of this session"
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        min=1,
        help="Number of records to show"
    )
):
    """Latest usage records, newest first."""
    try:
        analytics = AnalyticsContext(_config(ctx))
        records = analytics.repository.get_recent_events(session_id=session, limit=limit)
        if not records:
            console.print("\n[dim]No usage records found.[/]")
            sys.exit(EXIT_CODE_OK)

        table = Table(title="Recent usage")
        table.add_column("Time")
        table.add_column("Session")
        table.add_column("Agent")
        table.add_column("Model")
        table.add_column("Input", justify="right")
        table.add_column("Output", justify="right")
        table.add_column("Cost", justify="right")
        for record in records:
            output = f"{record.output_tokens:,}" + ("*" if record.is_estimated else "")
            table.add_row(
                record.timestamp,
                record.session_id,
                record.agent_key,
                record.model_name,
                f"{record.input_tokens:,}",
                output,
                format_cost(analytics.repository.record_cost(record)),
            )
        console.print(table)
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


def _cost_table(title: str, label: str, costs: Dict[str, float], by_key: bool = False) -> Table:
    table = Table(title=title)
    table.add_column(label)
    table.add_column("Cost", justify="right")
    if by_key:
        rows = sorted(costs.items())
    else:
        rows = sorted(costs.items(), key=lambda item: item[1], reverse=True)
    for key, cost in rows:
        table.add_row(key, format_cost(cost))
    return table


@app.command()
def report(
    ctx: typer.Context,
    period: str = typer.Option(
        "daily",
        "--period",
        "-p",
        help="Reporting period: daily, weekly or monthly"
    )
):
    """Cost report for a period plus usage patterns."""
    try:
        analytics = AnalyticsContext(_config(ctx))
        cost_report = analytics.repository.get_cost_report(period)
        patterns = analytics.repository.get_usage_patterns()

        console.print(f"\n[bold]Cost report ({cost_report.period})[/bold]")
        console.print("-" * 40)
        console.print(f"From: {cost_report.start}")
        console.print(f"To: {cost_report.end}")
        console.print(f"Total cost: {format_cost(cost_report.total_cost)}")
        if cost_report.by_model:
            console.print(_cost_table("By model", "Model", cost_report.by_model))
        if cost_report.by_agent:
            console.print(_cost_table("By agent", "Agent", cost_report.by_agent))
        if cost_report.by_day:
            console.print(_cost_table("By day", "Day", cost_report.by_day, by_key=True))

        console.print("\n[bold]Usage patterns[/bold]")
        console.print("-" * 40)
        console.print(f"Sessions: {patterns.total_sessions}")
        console.print(f"Average cost per session: {format_cost(patterns.average_cost_per_session)}")
        if patterns.peak_hours:
            console.print("Peak hours: " + ", ".join(f"{hour:02d}:00" for hour in patterns.peak_hours))
        if patterns.most_expensive_agents:
            console.print(_cost_table(
                "Most expensive agents",
                "Agent",
                {a["agent"]: a["cost"] for a in patterns.most_expensive_agents},
            ))
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


@app.command()
def cleanup(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        min=1,
        help="Keep records of the last N days (default from config)"
    )
):
    """Delete records older than the retention period."""
    try:
        config = _config(ctx)
        retention = days or config.retention_days
        analytics = AnalyticsContext(config)
        removed = analytics.tracker.cleanup_old_logs(retention)
        console.print(f"[green]✓[/] Removed {removed} records older than {retention} days")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


@app.command()
def backfill(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., help="Transcript files or directories"),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report what would be added without writing"
    ),
    reset: bool = typer.Option(
        False,
        "--reset",
        help="Forget previously backfilled events first"
    )
):
    """Import usage from assistant transcripts, skipping events seen before."""
    try:
        analytics = AnalyticsContext(_config(ctx))
        if reset and not dry_run:
            analytics.dedup.reset()

        result = BackfillEngine(analytics.tracker, analytics.dedup).run(paths, dry_run=dry_run)

        heading = "Backfill (dry run)" if dry_run else "Backfill"
        console.print(f"\n[bold]{heading}[/bold]")
        console.print("-" * 40)
        console.print(f"Files processed: {result.files_processed}")
        console.print(f"Entries added: {result.entries_added}")
        console.print(f"Duplicates skipped: {result.duplicates_skipped}")
        console.print(f"Errors: {result.errors_encountered}")
        console.print(f"Cost discovered: {format_cost(result.total_cost_discovered)}")
        console.print(f"Time: {result.time_elapsed:.2f}s")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(str(e))


if __name__ == "__main__":
    app()
