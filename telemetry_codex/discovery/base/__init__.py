"""Base infrastructure for discovery runs.

Provides:
- Rate limiting for remote query calls
- Progress display utilities
"""

from telemetry_codex.discovery.base.progress import (
    DiscoveryProgressDisplay,
    RunStats,
    build_entity_table,
    build_status_table,
    format_bytes,
    format_count,
    format_time,
    make_bar,
)
from telemetry_codex.discovery.base.rate_limiter import (
    DEFAULT_MAX_QUEUE,
    DEFAULT_STATS_INTERVAL,
    DEFAULT_TICK_INTERVAL,
    RateLimiter,
    RateLimiterStats,
)

__all__ = [
    "DEFAULT_MAX_QUEUE",
    "DEFAULT_STATS_INTERVAL",
    "DEFAULT_TICK_INTERVAL",
    "DiscoveryProgressDisplay",
    "RateLimiter",
    "RateLimiterStats",
    "RunStats",
    "build_entity_table",
    "build_status_table",
    "format_bytes",
    "format_count",
    "format_time",
    "make_bar",
]
