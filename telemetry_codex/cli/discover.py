"""Discovery commands: run, status, snapshot, snapshots."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from telemetry_codex.config import DiscoveryConfig, load_discovery_config
from telemetry_codex.discovery.base.progress import (
    DiscoveryProgressDisplay,
    build_entity_table,
    build_status_table,
    format_bytes,
    format_time,
)
from telemetry_codex.discovery.base.rate_limiter import RateLimiter
from telemetry_codex.discovery.engine import DiscoveryEngine
from telemetry_codex.discovery.errors import FatalConfigError, PersistenceError
from telemetry_codex.discovery.executor import HttpQueryExecutor
from telemetry_codex.discovery.models import (
    DiscoveryPhase,
    DiscoverySession,
    QueryOutcome,
)
from telemetry_codex.discovery.store import ProgressStore

logger = logging.getLogger(__name__)


@click.group()
def discover() -> None:
    """Explore a remote telemetry account and checkpoint what is found."""


def _store_for(config: DiscoveryConfig, max_age: float | None = None) -> ProgressStore:
    return ProgressStore(
        config.resolved_progress_file(),
        max_age=max_age if max_age is not None else config.max_checkpoint_age,
        max_backups=config.max_backups,
    )


def _location_options(func):
    func = click.option(
        "--progress-file",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="Checkpoint file (default: one per account under ~/.local/share)",
    )(func)
    func = click.option(
        "--account-id", type=int, default=None, help="Account to explore (or NEW_RELIC_ACCOUNT_ID)"
    )(func)
    return func


# =============================================================================
# run
# =============================================================================


@discover.command("run")
@_location_options
@click.option("--api-key", default=None, help="User API key (or NEW_RELIC_API_KEY)")
@click.option("--qpm", "queries_per_minute", type=int, default=None, help="Query starts per minute")
@click.option("--max-concurrent", type=int, default=None, help="Queries in flight at once")
@click.option("--query-timeout", type=float, default=None, help="Seconds per remote call")
@click.option("--max-entities", type=int, default=None, help="Record kinds to explore")
@click.option("--no-metrics", is_flag=True, help="Skip the metrics phase")
@click.option("--no-relationships", is_flag=True, help="Skip the relationships phase")
@click.option("--no-samples", is_flag=True, help="Skip the samples phase")
@click.option("--fresh", is_flag=True, help="Ignore any existing checkpoint")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to the console")
def run_command(
    account_id: int | None,
    progress_file: Path | None,
    api_key: str | None,
    queries_per_minute: int | None,
    max_concurrent: int | None,
    query_timeout: float | None,
    max_entities: int | None,
    no_metrics: bool,
    no_relationships: bool,
    no_samples: bool,
    fresh: bool,
    verbose: bool,
) -> None:
    """Run discovery, resuming from the last checkpoint when possible.

    Ctrl-C stops submitting new queries, lets in-flight ones finish and
    writes a final checkpoint; the next run resumes from it.

    \b
    Examples:
      telemetry-codex discover run
      telemetry-codex discover run --account-id 1234567 --qpm 1000
      telemetry-codex discover run --no-samples --fresh -v
    """
    from telemetry_codex.cli.logging import configure_cli_logging
    from telemetry_codex.cli.rich_output import make_console

    console = make_console()

    try:
        config = load_discovery_config(
            api_key=api_key,
            account_id=account_id,
            progress_file=progress_file,
            queries_per_minute=queries_per_minute,
            max_concurrent=max_concurrent,
            query_timeout=query_timeout,
            max_entities=max_entities,
            discover_metrics=False if no_metrics else None,
            analyze_relationships=False if no_relationships else None,
            collect_samples=False if no_samples else None,
        )
        config.validate()
    except FatalConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from e

    log_file = configure_cli_logging(
        "discover", account=config.account_id, verbose=verbose, console=console
    )
    if console is None:
        logging.basicConfig(
            level=logging.INFO if verbose else logging.WARNING,
            format="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )

    def log_print(msg: str) -> None:
        if console:
            console.print(msg)
        else:
            click.echo(re.sub(r"\[[^\]]+\]", "", msg))

    store = _store_for(config)
    log_print(f"\n[bold]Telemetry Discovery: account {config.account_id}[/bold]")
    log_print(f"  Endpoint: {config.endpoint}")
    log_print(
        f"  Limits: {config.queries_per_minute} queries/min, "
        f"{config.max_concurrent} concurrent, {config.query_timeout:.0f}s timeout"
    )
    log_print(f"  Checkpoint: {store.path}")
    log_print(f"  Log: {log_file}\n")

    display = DiscoveryProgressDisplay(console=console) if console else None

    def log_phase(phase: DiscoveryPhase, event: str) -> None:
        if event != "started":
            logger.info("Phase %s %s", phase.value, event)

    def log_query(outcome: QueryOutcome) -> None:
        if outcome.status == "abandoned":
            logger.info("Abandoned after %d attempts: %s", outcome.attempts, outcome.query)

    async def _run() -> DiscoverySession:
        limiter = RateLimiter(
            queries_per_minute=config.queries_per_minute,
            max_concurrent=config.max_concurrent,
            on_rate_limit=display.on_rate_limit if display else None,
        )
        async with HttpQueryExecutor(
            config.api_key or "",
            config.account_id or 0,
            endpoint=config.endpoint,
            timeout=config.query_timeout,
        ) as executor, limiter:
            engine = DiscoveryEngine(
                executor,
                config,
                store=store,
                limiter=limiter,
                on_phase=display.on_phase if display else log_phase,
                on_query=display.on_query if display else log_query,
            )
            loop = asyncio.get_running_loop()
            installed: list[signal.Signals] = []
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, engine.request_stop)
                    installed.append(sig)
                except (NotImplementedError, RuntimeError):
                    pass
            try:
                session = DiscoverySession() if fresh else None
                if display:
                    with display:
                        return await engine.run(session)
                return await engine.run(session)
            finally:
                for sig in installed:
                    loop.remove_signal_handler(sig)

    try:
        session = asyncio.run(_run())
    except FatalConfigError as e:
        log_print(f"[red]Discovery failed: {e}[/red]")
        raise SystemExit(1) from e

    estimate = store.estimate_progress(session)
    if console:
        console.print(build_status_table(session, estimate))
        if session.entities:
            console.print(build_entity_table(session))
    else:
        log_print(
            f"  {estimate.percentage}% - {estimate.message}: "
            f"{len(session.entities)} record kinds, "
            f"{len(session.metric_groups)} metric groups, "
            f"{len(session.relationships)} relationships"
        )
    stats = session.statistics
    log_print(
        f"  [dim]{stats.queries_executed} queries, {stats.queries_abandoned} abandoned, "
        f"{stats.cache_hits} cache hits, time {format_time(stats.processing_time)}[/dim]"
    )
    if session.is_terminal:
        log_print("\n[green]Discovery complete.[/green]")
    else:
        log_print("\n[yellow]Discovery stopped; run again to resume.[/yellow]")


# =============================================================================
# status / snapshot / snapshots
# =============================================================================


@discover.command("status")
@_location_options
def status_command(account_id: int | None, progress_file: Path | None) -> None:
    """Show progress recorded in the last checkpoint."""
    config = load_discovery_config(account_id=account_id, progress_file=progress_file)
    store = _store_for(config, max_age=float("inf"))
    checkpoint = store.load()
    if checkpoint is None:
        click.echo(f"No checkpoint found at {store.path}")
        raise SystemExit(1)

    console = Console()
    session = checkpoint.session
    age = checkpoint.age()
    console.print(f"[bold]Checkpoint[/bold] {store.path} ({format_time(age)} old)")
    if age > config.max_checkpoint_age:
        console.print("[yellow]Checkpoint is stale and will not be resumed[/yellow]")
    console.print(build_status_table(session, store.estimate_progress(session)))
    if session.entities:
        console.print(build_entity_table(session))


@discover.command("snapshot")
@click.argument("label")
@_location_options
def snapshot_command(label: str, account_id: int | None, progress_file: Path | None) -> None:
    """Keep a permanent, labelled copy of the current checkpoint."""
    config = load_discovery_config(account_id=account_id, progress_file=progress_file)
    store = _store_for(config, max_age=float("inf"))
    checkpoint = store.load()
    if checkpoint is None:
        click.echo(f"No checkpoint found at {store.path}")
        raise SystemExit(1)
    try:
        path = store.snapshot(checkpoint.session, label)
    except PersistenceError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from e
    click.echo(f"Snapshot written to {path}")


@discover.command("snapshots")
@_location_options
def snapshots_command(account_id: int | None, progress_file: Path | None) -> None:
    """List snapshots beside the checkpoint, newest first."""
    config = load_discovery_config(account_id=account_id, progress_file=progress_file)
    store = _store_for(config)
    snapshots = store.list_snapshots()
    if not snapshots:
        click.echo("No snapshots")
        return

    table = Table(title="Snapshots", title_justify="left")
    table.add_column("Label", style="cyan")
    table.add_column("Taken")
    table.add_column("Record kinds", justify="right")
    table.add_column("Queries", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Path", style="dim")
    for info in snapshots:
        table.add_row(
            info.label,
            datetime.fromtimestamp(info.timestamp).strftime("%Y-%m-%d %H:%M:%S"),
            str(info.entities),
            str(info.queries_executed),
            format_bytes(info.size),
            info.path,
        )
    Console().print(table)
