"""
Pattern-matching helpers that turn raw result rows into catalog entries.

Nothing here issues queries or mutates a session; the engine passes rows
in and merges what comes back.  Classification is deliberately shallow:
name patterns and a handful of statistics, no semantic interpretation.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from telemetry_codex.discovery.models import (
    AttributeInfo,
    DiscoveryPhase,
    DiscoverySession,
    EntityDescriptor,
    Insight,
    Relationship,
)

__all__ = [
    "JOIN_KEYS",
    "PRIORITY_KINDS",
    "build_insights",
    "calculate_priority",
    "classify_attribute",
    "classify_metric_type",
    "facet_value",
    "find_relationship_candidates",
    "group_metrics",
    "humanize",
    "infer_numeric_type",
    "infer_string_type",
    "is_good_facet",
    "is_important_metric",
    "make_relationship",
    "name_tokens",
    "numeric_value",
    "parse_keyset",
    "should_process_entity",
]

# Record kinds explored first when volumes are comparable.
PRIORITY_KINDS = frozenset(
    {
        "QueueSample",
        "KafkaBrokerSample",
        "KafkaTopicSample",
        "Transaction",
        "SystemSample",
        "Metric",
        "Log",
        "Span",
    }
)

# Internal and throwaway record kinds (Nr* except query/consumption/audit).
_SKIP_PATTERNS = (
    re.compile(r"^Nr(?!dbQuery|Consumption|AuditEvent)"),
    re.compile(r"Test$"),
    re.compile(r"Example$"),
    re.compile(r"Demo$"),
)

# Keyword groups checked before falling back to the name prefix.
_METRIC_KEYWORDS = ("kafka", "queue", "system", "container", "aws", "gcp", "azure")

_TYPED_KEYSETS = {
    "numericKeys": "numeric",
    "stringKeys": "string",
    "booleanKeys": "boolean",
}

_BAD_FACET_FRAGMENTS = (
    "id",
    "guid",
    "timestamp",
    "message",
    "log",
    "stacktrace",
    "trace",
    "span",
    "parent",
    "child",
)

_IMPORTANT_METRIC_FRAGMENTS = (
    "cpu",
    "memory",
    "disk",
    "network",
    "error",
    "rate",
    "throughput",
    "latency",
    "queue",
    "kafka",
)

# Shared keys that make two record kinds joinable: key -> (alternatives, type, strength)
JOIN_KEYS: dict[str, tuple[tuple[str, ...], str, str]] = {
    "entity.guid": (("entity.guid",), "entity-event", "strong"),
    "service.name": (("service.name",), "service", "strong"),
    "host": (("host", "hostname"), "infrastructure", "medium"),
    "trace.id": (("trace.id", "traceId"), "distributed-trace", "strong"),
}


# ============================================================================
# Row access
# ============================================================================


def facet_value(row: dict[str, Any], index: int = 0) -> Any:
    """Return the facet value of a faceted result row.

    Rows carry ``facet`` either as a list (multi-facet) or a scalar.
    """
    facet = row.get("facet")
    if isinstance(facet, list | tuple):
        return facet[index] if len(facet) > index else None
    if index == 0:
        return facet
    return None


def numeric_value(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    return None


# ============================================================================
# Entities
# ============================================================================


def calculate_priority(name: str, volume: int) -> float:
    """Volume weighted up for well-known and messaging record kinds."""
    priority = float(volume)
    if name in PRIORITY_KINDS:
        priority *= 10
    lowered = name.lower()
    if "kafka" in lowered or "queue" in lowered:
        priority *= 5
    return priority


def should_process_entity(name: str) -> bool:
    """False for internal, test and demo record kinds."""
    return not any(pattern.search(name) for pattern in _SKIP_PATTERNS)


# ============================================================================
# Attributes
# ============================================================================


def infer_numeric_type(stats: dict[str, Any]) -> str:
    values = [numeric_value(stats.get(k)) for k in ("avg", "min", "max")]
    present = [v for v in values if v is not None]
    if present and all(v == int(v) for v in present):
        return "integer"
    return "float"


def infer_string_type(attribute: str, sample_values: Iterable[Any] = ()) -> str:
    """Refine a string attribute from its name, then from sample values."""
    lowered = attribute.lower()
    name_rules = (
        (("id", "guid"), "identifier"),
        (("name",), "name"),
        (("url", "uri"), "url"),
        (("email",), "email"),
        (("ip",), "ip_address"),
        (("timestamp", "time"), "timestamp"),
        (("date",), "date"),
        (("status", "state", "type", "kind"), "enum"),
    )
    for fragments, data_type in name_rules:
        if any(fragment in lowered for fragment in fragments):
            return data_type

    samples = [str(v) for v in sample_values]
    if samples:
        if all(re.match(r"^\d{4}-\d{2}-\d{2}", v) for v in samples):
            return "timestamp"
        if all(re.fullmatch(r"[a-f0-9-]{36}", v, re.IGNORECASE) for v in samples):
            return "uuid"
        if all(re.fullmatch(r"\d+\.\d+\.\d+\.\d+", v) for v in samples):
            return "ip_address"
    return "string"


def classify_attribute(name: str, row: dict[str, Any] | None) -> AttributeInfo | None:
    """Classify one attribute from its profile row.

    The row carries ``avg``/``min``/``max`` (null for non-numeric fields),
    ``cardinality``, ``sample`` (latest value) and ``nullPct``.
    Returns None when the row holds nothing usable.
    """
    if not row:
        return None
    cardinality = numeric_value(row.get("cardinality"))
    null_pct = numeric_value(row.get("nullPct"))
    common = {
        "name": name,
        "cardinality": int(cardinality) if cardinality is not None else None,
        "null_percentage": null_pct,
        "nullable": bool(null_pct),
    }

    if numeric_value(row.get("avg")) is not None:
        statistics = {k: row.get(k) for k in ("avg", "min", "max", "stddev") if k in row}
        return AttributeInfo(
            type="numeric",
            data_type=infer_numeric_type(row),
            statistics=statistics,
            **common,
        )

    sample = row.get("sample")
    if isinstance(sample, bool):
        return AttributeInfo(type="boolean", data_type="boolean", **common)
    if sample is None and cardinality is None:
        return None

    samples = [sample] if sample is not None else []
    return AttributeInfo(
        type="string",
        data_type=infer_string_type(name, samples),
        sample_values=samples,
        **common,
    )


def parse_keyset(rows: list[dict[str, Any]]) -> dict[str, str | None]:
    """Attribute names from a ``keyset()`` result, with a type hint if known.

    Accepts the typed form (``allKeys``/``numericKeys``/``stringKeys``/
    ``booleanKeys``) as well as a bare row whose keys are the attributes.
    """
    if not rows:
        return {}
    first = rows[0]
    if "allKeys" in first or any(k in first for k in _TYPED_KEYSETS):
        keys: dict[str, str | None] = {}
        for field_name, hint in _TYPED_KEYSETS.items():
            for key in first.get(field_name) or []:
                keys.setdefault(str(key), hint)
        for key in first.get("allKeys") or []:
            keys.setdefault(str(key), None)
        return keys
    if all("key" in row for row in rows):
        return {str(row["key"]): row.get("type") for row in rows}
    return {key: None for key in first if key != "keyset"}


def is_good_facet(attribute: str) -> bool:
    lowered = attribute.lower()
    return not any(fragment in lowered for fragment in _BAD_FACET_FRAGMENTS)


# ============================================================================
# Metrics
# ============================================================================


def group_metrics(metric_names: Iterable[str]) -> dict[str, list[str]]:
    """Group metric names by keyword, else by a name prefix longer than 2."""
    groups: dict[str, list[str]] = {}
    for metric in metric_names:
        group = "other"
        for keyword in _METRIC_KEYWORDS:
            if keyword in metric:
                group = keyword
                break
        else:
            prefix = re.split(r"[._]", metric)[0]
            if len(prefix) > 2:
                group = prefix
        groups.setdefault(group, []).append(metric)
    return groups


# Metric kinds by name token, first match wins.
_METRIC_KIND_TOKENS: tuple[tuple[frozenset[str], str], ...] = (
    (frozenset({"percent", "percentage", "pct", "ratio"}), "percentage"),
    (frozenset({"bytes", "byte"}), "bytes"),
    (frozenset({"count", "counter"}), "counter"),
    (frozenset({"rate"}), "rate"),
    (frozenset({"duration", "time", "latency"}), "duration"),
    (frozenset({"gauge"}), "gauge"),
)


def name_tokens(name: str) -> list[str]:
    """Lower-case words of a dotted, snake or camel case name.

    'kafka.broker.bytesIn' -> ['kafka', 'broker', 'bytes', 'in']
    """
    spaced = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1 \2", name)
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", spaced)
    return [token.lower() for token in re.split(r"[^A-Za-z0-9]+", spaced) if token]


def classify_metric_type(metric_name: str, stats: dict[str, Any]) -> str:
    tokens = set(name_tokens(metric_name))
    for words, kind in _METRIC_KIND_TOKENS:
        if tokens & words:
            return kind

    minimum = numeric_value(stats.get("min"))
    rate = numeric_value(stats.get("rate"))
    if minimum is not None and minimum >= 0 and rate is not None and rate > 0:
        return "counter"
    return "gauge"


def is_important_metric(metric_name: str) -> bool:
    lowered = metric_name.lower()
    return any(fragment in lowered for fragment in _IMPORTANT_METRIC_FRAGMENTS)


# ============================================================================
# Relationships
# ============================================================================


def find_relationship_candidates(
    entities: Iterable[EntityDescriptor],
) -> dict[str, list[str]]:
    """Map each join key to the record kinds whose attributes carry it.

    Only keys shared by at least two kinds are returned, except trace ids
    which are interesting even on a single kind.
    """
    candidates: dict[str, list[str]] = {}
    for key, (alternatives, _, _) in JOIN_KEYS.items():
        names = [
            entity.name
            for entity in entities
            if any(alt in entity.attributes for alt in alternatives)
        ]
        minimum = 1 if key == "trace.id" else 2
        if len(names) >= minimum:
            candidates[key] = names
    return candidates


def make_relationship(key: str, entities: list[str]) -> Relationship:
    _, rel_type, strength = JOIN_KEYS[key]
    via = "host/hostname" if key == "host" else key
    return Relationship(type=rel_type, via=via, entities=entities, strength=strength)


# ============================================================================
# Insights
# ============================================================================


def build_insights(session: DiscoverySession) -> list[Insight]:
    insights: list[Insight] = []

    total = sum(e.volume for e in session.entities)
    if total > 0:
        top = max(session.entities, key=lambda e: e.volume)
        share = top.volume / total
        if share >= 0.5:
            insights.append(
                Insight(
                    kind="volume",
                    title="Data Volume Concentration",
                    description=(
                        f"{top.name} holds {share:.0%} of observed records "
                        f"({top.volume:,} of {total:,})"
                    ),
                    severity="info",
                )
            )

    no_metadata = [
        e.name
        for e in session.entities
        if session.phase_done(DiscoveryPhase.metadata) and e.metadata.is_empty
    ]
    if no_metadata:
        insights.append(
            Insight(
                kind="coverage",
                title="Record Kinds Without Metadata",
                description=f"No entity or host metadata for: {', '.join(no_metadata)}",
                severity="warning",
            )
        )

    if session.abandoned:
        insights.append(
            Insight(
                kind="abandoned",
                title="Abandoned Queries",
                description=(
                    f"{len(session.abandoned)} queries were abandoned after "
                    "exhausting retries; their results are missing from the catalog"
                ),
                severity="warning",
            )
        )
    return insights


# ============================================================================
# Text
# ============================================================================


def humanize(text: str) -> str:
    """'cpuPercent' / 'queue.size' -> 'Cpu Percent' / 'Queue Size'."""
    spaced = re.sub(r"([A-Z])", r" \1", text)
    spaced = re.sub(r"[._-]", " ", spaced)
    words = spaced.split()
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)
