"""
Discovery engine for remote telemetry stores.

This package provides:
1. Rate-limited, degradable query execution against the remote API
2. Phased exploration of record kinds, attributes, metrics and joins
3. Checkpointed progress that survives crashes and restarts

Public API:
- RateLimiter: token bucket + rolling window + concurrency gate
- QueryOptimizer: query shaping and time-window degradation
- ProgressStore: atomic checkpoints, backups, snapshots, auto-save
- DiscoveryEngine: phase orchestration (``telemetry_codex.discovery.engine``)

The engine module is not imported here since it depends on
``telemetry_codex.config``, which itself imports the error taxonomy.
"""

from telemetry_codex.discovery.base.rate_limiter import RateLimiter, RateLimiterStats
from telemetry_codex.discovery.cache import QueryCache, make_cache_key
from telemetry_codex.discovery.errors import (
    DiscoveryError,
    ErrorKind,
    FatalConfigError,
    MalformedResponseError,
    PersistenceError,
    QueryError,
    QueryTimeoutError,
    TransientQueryError,
    classify_error,
)
from telemetry_codex.discovery.models import (
    Checkpoint,
    DiscoveryPhase,
    DiscoverySession,
    EntityDescriptor,
    MetricGroup,
    ProgressEstimate,
    QueryOutcome,
    QueryResult,
    QueryShape,
    SessionStatus,
)
from telemetry_codex.discovery.optimizer import WINDOW_LADDER, QueryOptimizer
from telemetry_codex.discovery.store import ProgressStore

__all__ = [
    "WINDOW_LADDER",
    "Checkpoint",
    "DiscoveryError",
    "DiscoveryPhase",
    "DiscoverySession",
    "EntityDescriptor",
    "ErrorKind",
    "FatalConfigError",
    "MalformedResponseError",
    "MetricGroup",
    "PersistenceError",
    "ProgressEstimate",
    "ProgressStore",
    "QueryCache",
    "QueryError",
    "QueryOptimizer",
    "QueryOutcome",
    "QueryResult",
    "QueryShape",
    "QueryTimeoutError",
    "RateLimiter",
    "RateLimiterStats",
    "SessionStatus",
    "TransientQueryError",
    "classify_error",
    "make_cache_key",
]
