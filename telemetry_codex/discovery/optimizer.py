"""
Query shaping and degradation.

The optimizer works on opaque query text plus a few recognised markers
(``SINCE <n> <unit> ago`` windows).  It never looks at what a query
computes, so the same two operations serve every discovery phase:

- :meth:`QueryOptimizer.select_shape` picks a time window, row limit and
  sampling directive from the estimated data volume (pure table lookup).
- :meth:`QueryOptimizer.degrade` rewrites a query that timed out to the
  next narrower rung of a fixed window ladder.  When no rung matches, or
  the query is already at the narrowest rung, the text comes back
  unchanged and the caller must treat the query as non-degradable.

After discovery, :meth:`QueryOptimizer.generate_queries` proposes report
queries from the catalog.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from telemetry_codex.discovery.catalog import humanize, is_good_facet, is_important_metric
from telemetry_codex.discovery.models import (
    DiscoverySession,
    EntityDescriptor,
    GeneratedQuery,
    MetricGroup,
    QueryShape,
    Relationship,
)

logger = logging.getLogger(__name__)

# Largest to smallest.  Each timeout moves a query one rung down.
WINDOW_LADDER: tuple[str, ...] = (
    "SINCE 7 days ago",
    "SINCE 1 day ago",
    "SINCE 6 hours ago",
    "SINCE 1 hour ago",
    "SINCE 30 minutes ago",
    "SINCE 10 minutes ago",
)


def _rung_pattern(rung: str) -> re.Pattern[str]:
    """Whitespace- and case-tolerant, singular/plural-tolerant rung matcher."""
    _, amount, unit, _ = rung.split()
    unit_stem = unit.rstrip("s")
    return re.compile(
        rf"\bSINCE\s+{amount}\s+{unit_stem}s?\s+AGO\b",
        re.IGNORECASE,
    )


_RUNG_PATTERNS: tuple[re.Pattern[str], ...] = tuple(_rung_pattern(r) for r in WINDOW_LADDER)

# Defaults mirrored by DiscoveryConfig
DEFAULT_SAMPLE_SIZE = 1000
DEFAULT_HIGH_VOLUME_THRESHOLD = 1_000_000
DEFAULT_MEDIUM_VOLUME_THRESHOLD = 100_000


@dataclass(frozen=True)
class QueryOptimizer:
    """Deterministic, side-effect-free query shaping."""

    sample_size: int = DEFAULT_SAMPLE_SIZE
    high_volume_threshold: int = DEFAULT_HIGH_VOLUME_THRESHOLD
    medium_volume_threshold: int = DEFAULT_MEDIUM_VOLUME_THRESHOLD

    # ------------------------------------------------------------------
    # Shape selection
    # ------------------------------------------------------------------

    def select_shape(self, volume: int | None) -> QueryShape:
        """Pick a query shape for the estimated data volume.

        Very high volume gets a narrow window, explicit sampling and the
        configured sample size; medium volume a medium window and half the
        limit; low volume a wide window and a single row.
        """
        volume = volume or 0
        if volume > self.high_volume_threshold:
            return QueryShape(
                time_window="SINCE 1 hour ago",
                row_limit=self.sample_size,
                sampling="WITH SAMPLING",
            )
        if volume > self.medium_volume_threshold:
            return QueryShape(
                time_window="SINCE 6 hours ago",
                row_limit=max(1, self.sample_size // 2),
            )
        return QueryShape(time_window="SINCE 1 day ago", row_limit=1)

    # ------------------------------------------------------------------
    # Degradation
    # ------------------------------------------------------------------

    @staticmethod
    def window_rung(query: str) -> int | None:
        """Index into WINDOW_LADDER of the largest window in ``query``."""
        for index, pattern in enumerate(_RUNG_PATTERNS):
            if pattern.search(query):
                return index
        return None

    def degrade(self, query: str) -> str:
        """Replace the first matching window with the next narrower rung.

        Returns the query unchanged when it carries no recognised window
        or is already at the narrowest rung.
        """
        rung = self.window_rung(query)
        if rung is None or rung == len(WINDOW_LADDER) - 1:
            return query
        degraded = _RUNG_PATTERNS[rung].sub(WINDOW_LADDER[rung + 1], query, count=1)
        logger.debug(
            "Degraded window %r -> %r", WINDOW_LADDER[rung], WINDOW_LADDER[rung + 1]
        )
        return degraded

    def can_degrade(self, query: str) -> bool:
        return self.degrade(query) != query

    # ------------------------------------------------------------------
    # Report query generation
    # ------------------------------------------------------------------

    def generate_queries(self, session: DiscoverySession) -> list[GeneratedQuery]:
        """Propose report queries from everything discovered so far."""
        queries: list[GeneratedQuery] = []
        if session.entities:
            queries.extend(self._overview_queries(session.entities))
        for entity in session.entities:
            queries.extend(self._entity_queries(entity))
        for group in session.metric_groups:
            queries.extend(self._metric_group_queries(group))
        for relationship in session.relationships:
            queries.extend(self._relationship_queries(relationship))
        return queries

    def _overview_queries(self, entities: list[EntityDescriptor]) -> list[GeneratedQuery]:
        ranked = sorted(entities, key=lambda e: e.volume, reverse=True)
        names = ", ".join(e.name for e in ranked[:10])
        queries = [
            GeneratedQuery(
                title="Data Volume Overview",
                query=f"SELECT count(*) FROM {names} FACET eventType() SINCE 1 day ago",
                category="overview",
                description="Distribution of records across kinds",
            ),
            GeneratedQuery(
                title="Event Timeline",
                query=(
                    f"SELECT count(*) FROM {', '.join(e.name for e in ranked[:5])} "
                    "TIMESERIES 1 hour SINCE 1 day ago"
                ),
                category="overview",
                description="Record volume over time",
            ),
        ]
        with_entities = [e.name for e in ranked if (e.metadata.entity_count or 0) > 0]
        if with_entities:
            queries.append(
                GeneratedQuery(
                    title="Active Entities",
                    query=(
                        f"SELECT uniqueCount(entity.guid) FROM {', '.join(with_entities[:5])} "
                        "FACET entity.type SINCE 1 hour ago"
                    ),
                    category="overview",
                    description="Unique monitored entities by type",
                )
            )
        return queries

    def _entity_queries(self, entity: EntityDescriptor) -> list[GeneratedQuery]:
        queries = [
            GeneratedQuery(
                title=f"{entity.name} Volume",
                query=f"SELECT count(*) FROM {entity.name} TIMESERIES AUTO SINCE 1 day ago",
                category=entity.name,
                description=f"Volume trend for {entity.name}",
            )
        ]
        numeric = [a for a in entity.attributes.values() if a.type == "numeric"][:5]
        for attr in numeric:
            queries.append(
                GeneratedQuery(
                    title=f"{entity.name} - {humanize(attr.name)}",
                    query=(
                        f"SELECT average({attr.name}), percentile({attr.name}, 95), "
                        f"max({attr.name}) FROM {entity.name} TIMESERIES AUTO SINCE 1 day ago"
                    ),
                    category=entity.name,
                    description=f"Statistical analysis of {attr.name}",
                )
            )
        facets = [
            a
            for a in entity.attributes.values()
            if a.type == "string"
            and a.cardinality is not None
            and a.cardinality < 100
            and is_good_facet(a.name)
        ][:3]
        for attr in facets:
            queries.append(
                GeneratedQuery(
                    title=f"{entity.name} by {humanize(attr.name)}",
                    query=(
                        f"SELECT count(*) FROM {entity.name} FACET {attr.name} "
                        "SINCE 1 day ago LIMIT 10"
                    ),
                    category=entity.name,
                    description=f"Distribution by {attr.name}",
                )
            )
        return queries

    def _metric_group_queries(self, group: MetricGroup) -> list[GeneratedQuery]:
        top = group.members[:5]
        if not top:
            return []
        names = ",".join(f"'{m}'" for m in top)
        queries = [
            GeneratedQuery(
                title=f"{humanize(group.name)} Metrics Overview",
                query=(
                    f"SELECT average(value) FROM Metric WHERE metricName IN ({names}) "
                    "FACET metricName TIMESERIES AUTO SINCE 1 day ago"
                ),
                category="Metrics",
                description=f"Key metrics for {group.name}",
            )
        ]
        for metric in top:
            if is_important_metric(metric):
                queries.append(
                    GeneratedQuery(
                        title=humanize(metric),
                        query=(
                            "SELECT average(value), min(value), max(value) FROM Metric "
                            f"WHERE metricName = '{metric}' TIMESERIES AUTO SINCE 1 day ago"
                        ),
                        category="Metrics",
                        description=f"Detailed view of {metric}",
                    )
                )
        return queries

    def _relationship_queries(self, relationship: Relationship) -> list[GeneratedQuery]:
        if len(relationship.entities) < 2:
            return []
        source, target = relationship.entities[0], relationship.entities[1]
        key = relationship.via.split("/")[0]
        return [
            GeneratedQuery(
                title=f"{source} to {target} Correlation",
                query=(
                    f"SELECT count(*) FROM {target} WHERE {key} IN "
                    f"(SELECT uniques({key}, 100) FROM {source} SINCE 1 hour ago) "
                    "TIMESERIES AUTO SINCE 1 hour ago"
                ),
                category="Relationships",
                description=f"Correlation between {source} and {target} via {key}",
            )
        ]
