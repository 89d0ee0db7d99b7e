"""
Data models for telemetry discovery sessions.

The session is the unit of work and the unit of persistence: everything the
engine learns is merged into a :class:`DiscoverySession`, and a checkpoint is
nothing more than a session wrapped with a version and a wall-clock
timestamp.  All models are Pydantic so checkpoints validate on load and
round-trip through JSON without custom encoders.

Change detection for auto-save uses an explicit revision counter: the engine
calls :meth:`DiscoverySession.touch` after every merge, and the progress
store compares revisions instead of intercepting attribute writes.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

__all__ = [
    "CHECKPOINT_VERSION",
    "AbandonedQuery",
    "AttributeInfo",
    "Checkpoint",
    "DiscoveryPhase",
    "DiscoverySession",
    "EntityDescriptor",
    "EntityMetadata",
    "GeneratedQuery",
    "Insight",
    "MetricGroup",
    "MetricSeries",
    "PHASE_ORDER",
    "ProgressEstimate",
    "QueryOutcome",
    "QueryResult",
    "QueryShape",
    "Relationship",
    "SessionStatistics",
    "SessionStatus",
    "SnapshotInfo",
]

CHECKPOINT_VERSION = "1.0.0"


class SessionStatus(str, Enum):
    """Lifecycle state of a discovery session."""

    running = "running"
    completed = "completed"
    failed = "failed"


class DiscoveryPhase(str, Enum):
    """Fixed, ordered exploration phases."""

    entities = "entities"
    metadata = "metadata"
    metrics = "metrics"
    relationships = "relationships"
    samples = "samples"
    done = "done"


PHASE_ORDER: tuple[DiscoveryPhase, ...] = (
    DiscoveryPhase.entities,
    DiscoveryPhase.metadata,
    DiscoveryPhase.metrics,
    DiscoveryPhase.relationships,
    DiscoveryPhase.samples,
)


# ============================================================================
# Catalog entries
# ============================================================================


class AttributeInfo(BaseModel):
    """One field of a record kind."""

    name: str
    type: str = Field(description="numeric, string or boolean")
    data_type: str = Field(
        default="string",
        description="Refined type (integer, float, identifier, url, enum, ...)",
    )
    cardinality: int | None = None
    nullable: bool = False
    null_percentage: float | None = None
    statistics: dict[str, Any] = Field(default_factory=dict)
    sample_values: list[Any] = Field(default_factory=list)


class EntityMetadata(BaseModel):
    """Volume-independent facts about a record kind."""

    entity_count: int | None = None
    host_count: int | None = None
    earliest: Any = None
    latest: Any = None

    @property
    def is_empty(self) -> bool:
        return (
            self.entity_count is None
            and self.host_count is None
            and self.earliest is None
            and self.latest is None
        )


class EntityDescriptor(BaseModel):
    """A discovered kind of record (an event type)."""

    name: str
    volume: int = 0
    attributes: dict[str, AttributeInfo] = Field(default_factory=dict)
    metadata: EntityMetadata = Field(default_factory=EntityMetadata)
    sample_data: list[dict[str, Any]] = Field(default_factory=list)

    def merge_attributes(self, attributes: dict[str, AttributeInfo]) -> None:
        """Add or replace attribute classifications."""
        self.attributes.update(attributes)


class MetricSeries(BaseModel):
    """A numeric series analysed during the metrics phase."""

    name: str
    kind: str = "gauge"
    statistics: dict[str, Any] = Field(default_factory=dict)
    dimensions: list[str] = Field(default_factory=list)


class MetricGroup(BaseModel):
    """Related numeric series sharing a keyword or name prefix."""

    name: str
    members: list[str] = Field(default_factory=list)
    series: list[MetricSeries] = Field(default_factory=list)
    statistics: dict[str, Any] = Field(default_factory=dict)


class Relationship(BaseModel):
    """Record kinds joinable through a shared key."""

    type: str
    via: str
    entities: list[str] = Field(default_factory=list)
    strength: str = "medium"


class GeneratedQuery(BaseModel):
    """A query proposed from the catalog for later reporting."""

    title: str
    query: str
    category: str
    description: str = ""


class Insight(BaseModel):
    """An observation about the explored store or the run itself."""

    kind: str
    title: str
    description: str
    severity: str = "info"


class AbandonedQuery(BaseModel):
    """A query given up on after exhausting its retries."""

    query: str
    phase: DiscoveryPhase | None = None
    reason: str
    attempts: int


class SessionStatistics(BaseModel):
    queries_executed: int = 0
    queries_failed: int = 0
    queries_abandoned: int = 0
    cache_hits: int = 0
    data_points_discovered: int = 0
    processing_time: float = 0.0


# ============================================================================
# Session
# ============================================================================


class DiscoverySession(BaseModel):
    """Everything discovered so far in one exploration run."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    start_time: float = Field(default_factory=time.time)
    status: SessionStatus = SessionStatus.running
    entities: list[EntityDescriptor] = Field(default_factory=list)
    metric_groups: list[MetricGroup] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    queries: list[GeneratedQuery] = Field(default_factory=list)
    insights: list[Insight] = Field(default_factory=list)
    completed_phases: list[DiscoveryPhase] = Field(default_factory=list)
    abandoned: list[AbandonedQuery] = Field(default_factory=list)
    statistics: SessionStatistics = Field(default_factory=SessionStatistics)
    error: str | None = None
    revision: int = 0

    def touch(self) -> None:
        """Mark the session as changed since the last checkpoint."""
        self.revision += 1

    @property
    def is_terminal(self) -> bool:
        return self.status is not SessionStatus.running

    def get_entity(self, name: str) -> EntityDescriptor | None:
        for entity in self.entities:
            if entity.name == name:
                return entity
        return None

    def add_entity(self, entity: EntityDescriptor) -> EntityDescriptor:
        """Add an entity, or return the existing one with the same name.

        Entity names are unique within a session; a second sighting keeps
        the first descriptor and raises its volume if the new one is larger.
        """
        existing = self.get_entity(entity.name)
        if existing is not None:
            existing.volume = max(existing.volume, entity.volume)
            return existing
        self.entities.append(entity)
        return entity

    def phase_done(self, phase: DiscoveryPhase) -> bool:
        return phase in self.completed_phases

    def mark_phase_done(self, phase: DiscoveryPhase) -> None:
        if phase not in self.completed_phases:
            self.completed_phases.append(phase)
        self.touch()

    def record_abandoned(self, abandoned: AbandonedQuery) -> None:
        self.abandoned.append(abandoned)
        self.statistics.queries_abandoned += 1
        self.touch()


class Checkpoint(BaseModel):
    """Serialized session plus the time it was written."""

    version: str = CHECKPOINT_VERSION
    timestamp: float = Field(description="Wall-clock epoch seconds at write time")
    session: DiscoverySession
    label: str | None = None

    def age(self, now: float | None = None) -> float:
        """Seconds since this checkpoint was written."""
        return (time.time() if now is None else now) - self.timestamp


class SnapshotInfo(BaseModel):
    """Listing entry for a named snapshot."""

    label: str
    path: str
    timestamp: float
    size: int
    entities: int = 0
    queries_executed: int = 0


class ProgressEstimate(BaseModel):
    percentage: int
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Query plumbing
# ============================================================================


class QueryShape(BaseModel):
    """Time window, row limit and sampling chosen for a query."""

    time_window: str
    row_limit: int
    sampling: str = ""

    @property
    def limit_clause(self) -> str:
        return f"LIMIT {self.row_limit}"

    def clauses(self) -> str:
        """Render the shape as trailing query clauses."""
        parts = [self.time_window, self.limit_clause]
        if self.sampling:
            parts.append(self.sampling)
        return " ".join(parts)


class QueryResult(BaseModel):
    """Rows and metadata returned by the remote executor."""

    results: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def first(self) -> dict[str, Any] | None:
        return self.results[0] if self.results else None


class QueryOutcome(BaseModel):
    """Final outcome of one logical query after retries."""

    query: str
    final_query: str
    status: str = Field(description="ok, cached, empty, abandoned or skipped")
    attempts: int = 0
    degradations: int = 0
    duration: float = 0.0
    phase: DiscoveryPhase | None = None
    error: str | None = None
    result: QueryResult = Field(default_factory=QueryResult)

    @property
    def ok(self) -> bool:
        return self.status in ("ok", "cached")
