"""Typer CLI application for RankGrid.

Commands for setting up tracking configs, running geo-grid checks on demand,
dispatching due schedules, estimating costs, managing credits, and serving
the background scheduler.
"""

import asyncio
import logging
import time
from datetime import date
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from rankgrid.exceptions import RankGridError

console = Console()
app = typer.Typer(
    name="rankgrid",
    help="RankGrid -- geo-grid local rank tracking with credit billing and scheduling.",
    add_completion=False,
    no_args_is_help=True,
)

CONFIG_OPTION = typer.Option("config/settings.yaml", "--config", "-c", help="Settings YAML path.")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging level and format."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context."""
    return asyncio.run(coro)


def _bootstrap(config_path: str, verbose: bool):
    """Configure logging, load settings and make sure the schema exists."""
    from rankgrid.config import load_settings
    from rankgrid.database import init_db

    _setup_logging(verbose)
    settings = load_settings(config_path)
    init_db(database_url=settings.database_url, echo=settings.database_echo)
    return settings


def _fail(exc: Exception) -> None:
    console.print(f"[red]✘[/red] {exc}")
    raise typer.Exit(code=1)


def _status_display(status: str) -> str:
    if status in ("success", "completed"):
        return f"[green]✔ {status}[/green]"
    if status in ("error", "failed"):
        return f"[red]✘ {status}[/red]"
    if status in ("skipped", "already_running", "insufficient_credits", "partial"):
        return f"[yellow]○ {status}[/yellow]"
    return status


def _print_results(results: dict, title: str = "Results") -> None:
    """Pretty-print dispatcher results using Rich."""
    steps = results.get("steps", {})
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Item", style="cyan", min_width=20)
    table.add_column("Status", min_width=10)
    table.add_column("Details", max_width=60)

    for step_name, step_data in steps.items():
        status = step_data.get("status", "unknown")
        detail_parts = []
        if step_data.get("error"):
            detail_parts.append(str(step_data["error"])[:80])
        if step_data.get("reason"):
            detail_parts.append(str(step_data["reason"]))
        for key in ("successful_checks", "total_checks", "billed_credits", "planned_cost"):
            if key in step_data:
                detail_parts.append(f"{key}={step_data[key]}")
        table.add_row(step_name, _status_display(status), "; ".join(detail_parts))

    console.print(table)
    summary = results.get("summary", "")
    elapsed = results.get("elapsed_seconds", 0)
    if summary:
        console.print(f"\n[bold]{summary}[/bold]")
    if elapsed:
        console.print(f"Elapsed: {elapsed}s")


def _print_run(result: dict) -> None:
    table = Table(title=f"Run {result['run_id'][:8]} for config {result['config_id']}",
                  show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan", min_width=20)
    table.add_column("Value", max_width=60)
    table.add_row("Status", _status_display(result["status"]))
    for key in ("trigger", "reason", "check_date", "total_checks", "successful_checks",
                "error_count", "planned_cost", "billed_credits", "provider_cost_usd"):
        if result.get(key) not in (None, ""):
            table.add_row(key.replace("_", " ").title(), str(result[key]))
    summary = result.get("summary") or {}
    if summary:
        table.add_row("Visibility Score", f"{summary['visibility_score']:.1f}")
        table.add_row("Avg Position", str(summary["avg_position"]))
    console.print(table)
    for error in result.get("errors", [])[:10]:
        console.print(f"  [red]-[/red] {error}")


# ------------------------------------------------------------------
# init
# ------------------------------------------------------------------
@app.command()
def init(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Create the database schema and data directories."""
    settings = _bootstrap(config, verbose)
    console.print(Panel("[bold cyan]RankGrid Setup[/bold cyan]"))
    Path("data").mkdir(parents=True, exist_ok=True)
    console.print("[green]✔[/green] Database tables created.")
    if Path(config).exists():
        console.print(f"[green]✔[/green] {config} found.")
    else:
        console.print(f"[yellow]⚠[/yellow] {config} not found. Using defaults.")
    if settings.provider.login and settings.provider.password:
        console.print("[green]✔[/green] DataForSEO credentials configured.")
    else:
        console.print("[yellow]⚠[/yellow] DATAFORSEO_LOGIN / DATAFORSEO_PASSWORD not set.")


# ------------------------------------------------------------------
# keywords and configs
# ------------------------------------------------------------------
@app.command("add-keyword")
def add_keyword(
    account: str = typer.Argument(..., help="Account id."),
    phrase: str = typer.Argument(..., help="Concept phrase."),
    terms: str = typer.Option("", "--terms", "-t", help="Comma-separated search terms."),
    questions: str = typer.Option("", "--questions", "-q", help="Semicolon-separated LLM questions."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Add a concept to the keyword library."""
    from rankgrid.database import get_session
    from rankgrid.models import Keyword

    _bootstrap(config, verbose)
    with get_session() as session:
        keyword = Keyword(
            account_id=account,
            phrase=phrase,
            search_terms=[t.strip() for t in terms.split(",") if t.strip()],
            related_questions=[q.strip() for q in questions.split(";") if q.strip()],
        )
        session.add(keyword)
        session.flush()
        keyword_id = keyword.id
    console.print(f"[green]✔[/green] Keyword {keyword_id} created: {phrase}")


@app.command("create-config")
def create_config(
    account: str = typer.Argument(..., help="Account id."),
    lat: float = typer.Argument(..., help="Center latitude."),
    lng: float = typer.Argument(..., help="Center longitude."),
    place_id: str = typer.Option(..., "--place-id", "-p", help="Target business place id."),
    radius: float = typer.Option(3.0, "--radius", "-r", help="Radius in miles."),
    grid_size: int = typer.Option(5, "--grid-size", "-g", help="Grid points: 5, 9, 25 or 49."),
    name: str = typer.Option("", "--name", "-n", help="Display name."),
    frequency: Optional[str] = typer.Option(None, "--frequency", "-f", help="daily, weekly or monthly."),
    hour: int = typer.Option(9, "--hour", help="Scheduled hour (UTC)."),
    day_of_week: Optional[int] = typer.Option(None, "--dow", help="Weekday, 0=Sunday."),
    day_of_month: Optional[int] = typer.Option(None, "--dom", help="Day of month, 1-31."),
    keywords: str = typer.Option("", "--keywords", "-k", help="Comma-separated keyword ids to track."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Create a geo-grid tracking config and attach keyword terms."""
    from rankgrid.modules.geo_grid import TrackingService

    _bootstrap(config, verbose)
    tracking = TrackingService()
    try:
        created = tracking.create_config(
            account, lat, lng, radius_miles=radius, grid_size=grid_size, name=name,
            target_place_id=place_id, schedule_frequency=frequency, schedule_hour=hour,
            schedule_day_of_week=day_of_week, schedule_day_of_month=day_of_month,
        )
        for keyword_id in [int(k) for k in keywords.split(",") if k.strip()]:
            tracking.add_keyword_terms(created["id"], keyword_id)
    except RankGridError as exc:
        _fail(exc)

    table = Table(title=f"Config {created['id']}", show_header=True, header_style="bold magenta")
    table.add_column("Label", style="cyan")
    table.add_column("Lat")
    table.add_column("Lng")
    for point in created["check_points"]:
        table.add_row(point["label"], f"{point['lat']:.6f}", f"{point['lng']:.6f}")
    console.print(table)
    console.print(f"Next scheduled run: {created.get('next_scheduled_at') or 'not scheduled'}")


# ------------------------------------------------------------------
# run-now
# ------------------------------------------------------------------
@app.command("run-now")
def run_now(
    config_id: int = typer.Argument(..., help="Tracking config id."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run a manual geo-grid check for one config."""
    from rankgrid.workflows import RunDispatcher

    settings = _bootstrap(config, verbose)
    console.print(Panel(f"[bold cyan]Geo-grid check: config {config_id}[/bold cyan]"))
    dispatcher = RunDispatcher.from_settings(settings)

    async def _run():
        try:
            return await dispatcher._get_rank_checker().run_config(config_id)
        finally:
            await dispatcher.close()

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress.add_task(description="Checking rankings across the grid...", total=None)
        try:
            result = _run_async(_run())
        except RankGridError as exc:
            _fail(exc)

    _print_run(result.to_dict())


# ------------------------------------------------------------------
# run-due
# ------------------------------------------------------------------
@app.command("run-due")
def run_due(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Run every config and schedule that is due now."""
    from rankgrid.workflows import RunDispatcher

    settings = _bootstrap(config, verbose)
    console.print(Panel("[bold cyan]Dispatching due work[/bold cyan]"))
    dispatcher = RunDispatcher.from_settings(settings)

    async def _run():
        try:
            return await dispatcher.run_due()
        finally:
            await dispatcher.close()

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress.add_task(description="Running due checks...", total=None)
        results = _run_async(_run())

    _print_results(results, title="Dispatch Results")


# ------------------------------------------------------------------
# estimate
# ------------------------------------------------------------------
@app.command()
def estimate(
    types: str = typer.Option("geo_grid", "--types", "-t", help="Comma-separated check types."),
    grid_size: int = typer.Option(5, "--grid-size", "-g", help="Grid points per term."),
    keywords: int = typer.Option(1, "--keywords", "-k", help="Number of concepts."),
    providers: int = typer.Option(0, "--providers", "-p", help="Number of LLM providers."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Estimate the credit cost of a run."""
    from rankgrid.config import load_settings
    from rankgrid.modules.credits import CreditService

    _setup_logging(verbose)
    service = CreditService(load_settings(config).pricing)
    try:
        breakdown = service.cost_breakdown(
            [t.strip() for t in types.split(",") if t.strip()], grid_size, keywords, providers
        )
    except ValueError as exc:
        _fail(exc)

    table = Table(title="Cost Estimate", show_header=True, header_style="bold magenta")
    table.add_column("Check Type", style="cyan")
    table.add_column("Credits", justify="right")
    for name, value in breakdown.to_dict().items():
        table.add_row(name, str(value))
    console.print(table)


# ------------------------------------------------------------------
# summary / trend
# ------------------------------------------------------------------
@app.command()
def summary(
    config_id: int = typer.Argument(..., help="Tracking config id."),
    day: Optional[str] = typer.Option(None, "--date", "-d", help="ISO date, defaults to today."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the daily summary for a config."""
    from rankgrid.modules.geo_grid import SummaryAggregator

    _bootstrap(config, verbose)
    target = date.fromisoformat(day) if day else date.today()
    row = SummaryAggregator().get_summary(config_id, target)
    if row is None:
        console.print(f"[yellow]No summary for config {config_id} on {target}[/yellow]")
        raise typer.Exit(code=1)

    table = Table(title=f"Config {config_id} on {target}", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key in ("run_status", "total_checks", "valid_checks", "error_count", "top3_pct",
                "top10_pct", "top20_pct", "none_pct", "avg_position", "visibility_score",
                "visibility_delta", "avg_position_delta"):
        table.add_row(key, str(row[key]))
    console.print(table)


@app.command()
def trend(
    config_id: int = typer.Argument(..., help="Tracking config id."),
    days: int = typer.Option(30, "--days", help="Days of history."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the visibility trend for a config."""
    from rankgrid.modules.geo_grid import SummaryAggregator

    _bootstrap(config, verbose)
    rows = SummaryAggregator().get_trend(config_id, days=days)
    table = Table(title=f"Config {config_id}: last {days} days", show_header=True, header_style="bold magenta")
    table.add_column("Date", style="cyan")
    table.add_column("Status")
    table.add_column("Visibility", justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("Avg Pos", justify="right")
    for row in rows:
        table.add_row(
            row["summary_date"], _status_display(row["run_status"]),
            f"{row['visibility_score']:.1f}",
            "" if row["visibility_delta"] is None else f"{row['visibility_delta']:+.1f}",
            "" if row["avg_position"] is None else str(row["avg_position"]),
        )
    console.print(table)


# ------------------------------------------------------------------
# credits
# ------------------------------------------------------------------
@app.command()
def balance(
    account: str = typer.Argument(..., help="Account id."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show an account's credit balance and recent ledger entries."""
    from rankgrid.modules.credits import CreditService

    settings = _bootstrap(config, verbose)
    service = CreditService(settings.pricing)
    current = service.get_balance(account)
    console.print(Panel(
        f"[bold]{account}[/bold]: {current.total} credits "
        f"({current.included} included, {current.purchased} purchased)"
    ))
    table = Table(title="Recent Ledger", show_header=True, header_style="bold magenta")
    table.add_column("When", style="cyan")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Feature")
    for entry in service.get_ledger(account, limit=20):
        table.add_row(
            entry["created_at"] or "", entry["transaction_type"],
            str(entry["amount"]), entry["feature_type"] or "",
        )
    console.print(table)


@app.command()
def grant(
    account: str = typer.Argument(..., help="Account id."),
    amount: int = typer.Argument(..., help="Credits to add."),
    included: bool = typer.Option(False, "--included", help="Grant as included (plan) credits."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Add purchased (or included) credits to an account."""
    from rankgrid.models import CreditType, TransactionType
    from rankgrid.modules.credits import CreditService

    settings = _bootstrap(config, verbose)
    service = CreditService(settings.pricing)
    try:
        updated = service.credit(
            account,
            amount,
            credit_type=CreditType.INCLUDED if included else CreditType.PURCHASED,
            transaction_type=TransactionType.ADJUSTMENT if included else TransactionType.PURCHASE,
            description="Granted from the command line",
        )
    except RankGridError as exc:
        _fail(exc)
    console.print(f"[green]✔[/green] {account} now has {updated.total} credits.")


# ------------------------------------------------------------------
# serve
# ------------------------------------------------------------------
@app.command()
def serve(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Run the background scheduler that dispatches due work on its cron."""
    from rankgrid.scheduler import RankScheduler

    settings = _bootstrap(config, verbose)
    scheduler = RankScheduler(settings.scheduler)
    scheduler.start()
    scheduler.register_dispatcher(config_path=config)
    console.print(Panel(
        f"[bold cyan]Scheduler running[/bold cyan] (dispatch cron: {settings.scheduler.dispatch_cron})\n"
        "Press Ctrl+C to stop."
    ))
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping scheduler...")
    finally:
        scheduler.stop()


# ------------------------------------------------------------------
# status
# ------------------------------------------------------------------
@app.command()
def status(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Show tracking configs with their schedules and last runs."""
    from rankgrid.modules.geo_grid import TrackingService

    _bootstrap(config, verbose)
    table = Table(title="Tracking Configs", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Account")
    table.add_column("Name")
    table.add_column("Grid", justify="right")
    table.add_column("Schedule")
    table.add_column("Next Run")
    table.add_column("Last Run")
    for item in TrackingService().list_configs():
        table.add_row(
            str(item["id"]), item["account_id"], item["name"] or "",
            f"{item['grid_size']} @ {item['radius_miles']} mi",
            item.get("schedule_description") or "manual",
            item.get("next_scheduled_at") or "",
            item.get("last_run_at") or "",
        )
    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
