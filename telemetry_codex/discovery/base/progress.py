"""
Progress display for discovery runs.

Rich renderables built from a session and its progress estimate, plus a
small live display fed by the engine and limiter callbacks.

Design Principles:
- Clean: Minimal visual clutter (no emojis, thin progress bars)
- Passive: The display only reads state handed to it; it never touches
  the engine or the limiter

Usage:
    display = DiscoveryProgressDisplay(console=console)
    engine = DiscoveryEngine(
        executor, config,
        on_phase=display.on_phase,
        on_query=display.on_query,
    )
    with display:
        await engine.run()
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from telemetry_codex.discovery.models import (
    PHASE_ORDER,
    DiscoveryPhase,
    DiscoverySession,
    ProgressEstimate,
    QueryOutcome,
)


def format_time(seconds: float) -> str:
    """Format duration: 1h 23m, 5m 30s, 45s"""
    if seconds < 0:
        return "--"
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        mins, secs = divmod(int(seconds), 60)
        return f"{mins}m {secs:02d}s" if secs else f"{mins}m"
    hours, rem = divmod(int(seconds), 3600)
    mins = rem // 60
    return f"{hours}h {mins:02d}m" if mins else f"{hours}h"


def format_bytes(num_bytes: int) -> str:
    if num_bytes >= 1_000_000:
        return f"{num_bytes / 1_000_000:.1f}MB"
    if num_bytes >= 1_000:
        return f"{num_bytes / 1_000:.1f}KB"
    return f"{num_bytes}B"


def format_count(count: int) -> str:
    """Format large counts: 1.5M, 256K, 1234"""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def make_bar(
    ratio: float, width: int, filled_char: str = "━", empty_char: str = "─"
) -> str:
    """Create a simple thin progress bar string."""
    ratio = max(0.0, min(1.0, ratio))
    filled = int(width * ratio)
    return filled_char * filled + empty_char * (width - filled)


# =============================================================================
# Static status (from a checkpoint)
# =============================================================================


def build_status_table(session: DiscoverySession, estimate: ProgressEstimate) -> Table:
    """Summary table for ``discover status``."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()

    stats = session.statistics
    bar = Text(make_bar(estimate.percentage / 100, 30), style="cyan")
    bar.append(f" {estimate.percentage}%", style="bold")

    table.add_row("Session", session.id)
    table.add_row("Status", _status_text(session))
    table.add_row("Progress", bar)
    table.add_row("Stage", estimate.message)
    table.add_row(
        "Phases",
        " ".join(
            f"[green]{p.value}[/green]" if session.phase_done(p) else f"[dim]{p.value}[/dim]"
            for p in PHASE_ORDER
        ),
    )
    table.add_row("Record kinds", str(len(session.entities)))
    table.add_row("Attributes", format_count(stats.data_points_discovered))
    table.add_row("Metric groups", str(len(session.metric_groups)))
    table.add_row("Relationships", str(len(session.relationships)))
    table.add_row(
        "Queries",
        f"{format_count(stats.queries_executed)} executed, "
        f"{stats.queries_failed} failed, {stats.cache_hits} cached",
    )
    abandoned = Text(str(stats.queries_abandoned))
    if stats.queries_abandoned:
        abandoned.stylize("yellow")
    table.add_row("Abandoned", abandoned)
    table.add_row("Elapsed", format_time(stats.processing_time))
    if session.error:
        table.add_row("Error", Text(session.error, style="red"))
    return table


def _status_text(session: DiscoverySession) -> Text:
    style = {"running": "cyan", "completed": "green", "failed": "red"}[session.status.value]
    return Text(session.status.value, style=style)


def build_entity_table(session: DiscoverySession, limit: int = 20) -> Table:
    """Top record kinds by volume."""
    table = Table(title="Record kinds", title_justify="left")
    table.add_column("Name", style="cyan")
    table.add_column("Volume (1d)", justify="right")
    table.add_column("Attributes", justify="right")
    table.add_column("Entities", justify="right")
    table.add_column("Hosts", justify="right")
    ranked = sorted(session.entities, key=lambda e: e.volume, reverse=True)
    for entity in ranked[:limit]:
        table.add_row(
            entity.name,
            format_count(entity.volume),
            str(len(entity.attributes)),
            _optional(entity.metadata.entity_count),
            _optional(entity.metadata.host_count),
        )
    return table


def _optional(value: int | None) -> str:
    return "-" if value is None else format_count(value)


# =============================================================================
# Live display (fed by callbacks)
# =============================================================================


@dataclass
class RunStats:
    """Counters collected from engine and limiter callbacks."""

    phase: DiscoveryPhase | None = None
    outcomes: Counter = field(default_factory=Counter)
    degradations: int = 0
    rate_limit_waits: int = 0
    rate_limit_seconds: float = 0.0
    last_query: str = ""
    started: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


class DiscoveryProgressDisplay:
    """Live one-panel view of a running discovery."""

    def __init__(self, console: Console | None = None, refresh_per_second: float = 4) -> None:
        self.console = console or Console()
        self.stats = RunStats()
        self._live = Live(
            self._render(),
            console=self.console,
            refresh_per_second=refresh_per_second,
            transient=True,
        )

    def __enter__(self) -> DiscoveryProgressDisplay:
        self._live.__enter__()
        return self

    def __exit__(self, *args: Any) -> None:
        self._live.__exit__(*args)

    # Callbacks --------------------------------------------------------

    def on_phase(self, phase: DiscoveryPhase, event: str) -> None:
        if event == "started":
            self.stats.phase = phase
        self._refresh()

    def on_query(self, outcome: QueryOutcome) -> None:
        self.stats.outcomes[outcome.status] += 1
        self.stats.degradations += outcome.degradations
        self.stats.last_query = " ".join(outcome.final_query.split())
        self._refresh()

    def on_rate_limit(self, wait: float) -> None:
        self.stats.rate_limit_waits += 1
        self.stats.rate_limit_seconds += wait
        self._refresh()

    # Rendering --------------------------------------------------------

    def _refresh(self) -> None:
        self._live.update(self._render())

    def _render(self) -> Panel:
        stats = self.stats
        phase = stats.phase.value if stats.phase else "starting"
        index = PHASE_ORDER.index(stats.phase) if stats.phase in PHASE_ORDER else 0

        header = Text()
        header.append(f"{phase:<14}", style="bold cyan")
        header.append(make_bar(index / len(PHASE_ORDER), 30), style="cyan")
        header.append(f"  {format_time(stats.elapsed)}", style="dim")

        counts = Text()
        for status in ("ok", "cached", "empty", "abandoned", "skipped"):
            style = "yellow" if status == "abandoned" and stats.outcomes[status] else ""
            counts.append(f"{status} {format_count(stats.outcomes[status])}  ", style=style)
        counts.append(f"degraded {stats.degradations}  ", style="dim")
        counts.append(
            f"throttled {stats.rate_limit_waits} ({format_time(stats.rate_limit_seconds)})",
            style="dim",
        )

        last = Text(stats.last_query[:100], style="dim italic")
        return Panel(Group(header, counts, last), title="Discovery", border_style="dim")
