"""
Discovery orchestration.

The :class:`DiscoveryEngine` walks a fixed phase sequence

    entities -> metadata -> metrics -> relationships -> samples -> done

and issues every remote query through a shared :class:`RateLimiter`.
Within a phase, per-entity work is fanned out with :func:`gather_or_cancel`
and the limiter bounds how much of it is actually in flight.  A fatal error
in one branch cancels its siblings before the session is marked failed.
A phase completes fully (every query succeeded, came back empty, or was
abandoned) before it is recorded, checkpointed and the next phase starts.

Retry policy per logical query, decided by
:func:`~telemetry_codex.discovery.errors.classify_error`:

- timeout: degrade the time window one rung and resubmit, up to
  ``max_degrade_attempts`` times or until the query cannot be degraded,
  then abandon
- transient: resubmit unchanged with exponential backoff, up to
  ``transient_retries`` times, then abandon
- malformed: treat as an empty result
- fatal: abort the session with status ``failed``

Abandoned queries are recorded on the session and the phase carries on.

All merging into the session happens in coroutines of this engine on one
event loop; executors only return rows.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from telemetry_codex.config.discovery_config import DiscoveryConfig
from telemetry_codex.discovery.base.rate_limiter import RateLimiter
from telemetry_codex.discovery.cache import QueryCache, make_cache_key
from telemetry_codex.discovery.catalog import (
    JOIN_KEYS,
    build_insights,
    calculate_priority,
    classify_attribute,
    classify_metric_type,
    facet_value,
    find_relationship_candidates,
    group_metrics,
    make_relationship,
    numeric_value,
    parse_keyset,
    should_process_entity,
)
from telemetry_codex.discovery.errors import (
    ErrorKind,
    FatalConfigError,
    PersistenceError,
    QueryTimeoutError,
    classify_error,
)
from telemetry_codex.discovery.executor import QueryExecutor
from telemetry_codex.discovery.models import (
    PHASE_ORDER,
    AbandonedQuery,
    AttributeInfo,
    DiscoveryPhase,
    DiscoverySession,
    EntityDescriptor,
    EntityMetadata,
    MetricGroup,
    MetricSeries,
    QueryOutcome,
    QueryResult,
    SessionStatus,
)
from telemetry_codex.discovery.optimizer import QueryOptimizer
from telemetry_codex.discovery.store import ProgressStore

logger = logging.getLogger(__name__)

# Metric name sweeps: (label, WHERE clause)
METRIC_SWEEPS: tuple[tuple[str, str], ...] = (
    ("kafka", "metricName LIKE '%kafka%'"),
    ("queue", "metricName LIKE '%queue%'"),
    ("system", "metricName LIKE '%system%'"),
    ("application", "metricName LIKE '%application%'"),
    (
        "other",
        "metricName NOT LIKE '%kafka%' AND metricName NOT LIKE '%queue%' "
        "AND metricName NOT LIKE '%system%' AND metricName NOT LIKE '%application%'",
    ),
)

# Keys that are structural rather than metric dimensions
_NON_DIMENSIONS = frozenset({"metricName", "value", "timestamp", "keyset"})


def _quote(attribute: str) -> str:
    return f"`{attribute}`"


class _StopRequested(Exception):
    """Raised inside the limiter when a queued call starts after a stop."""


async def gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """Like ``asyncio.gather`` but cancels the remaining awaitables on failure.

    The first exception propagates only after every sibling has finished
    unwinding, so none of them can write to the session afterwards.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class DiscoveryEngine:
    """Runs one discovery session against a remote query executor.

    Args:
        executor: Async callable running one query (see
            :class:`~telemetry_codex.discovery.executor.QueryExecutor`)
        config: Tunables; validated before the first query
        store: Checkpoint store.  Built from ``config`` when
            ``config.save_progress`` is set and none is given.
        cache: Query cache for this session.  Built from ``config`` when
            ``config.enable_cache`` is set and none is given.
        limiter: Shared rate limiter.  When omitted, one is created per
            run and closed when the run ends.
        on_phase: Called with ``(phase, event)`` where event is
            ``started``, ``completed`` or ``skipped``
        on_query: Called with the :class:`QueryOutcome` of every logical query
        sleep: Awaitable sleep used for transient backoff (tests pass a no-op)
    """

    def __init__(
        self,
        executor: QueryExecutor,
        config: DiscoveryConfig | None = None,
        *,
        store: ProgressStore | None = None,
        cache: QueryCache | None = None,
        limiter: RateLimiter | None = None,
        optimizer: QueryOptimizer | None = None,
        on_phase: Callable[[DiscoveryPhase, str], None] | None = None,
        on_query: Callable[[QueryOutcome], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.executor = executor
        self.config = config or DiscoveryConfig()
        self.optimizer = optimizer or QueryOptimizer(
            sample_size=self.config.sample_size,
            high_volume_threshold=self.config.high_volume_threshold,
            medium_volume_threshold=self.config.medium_volume_threshold,
        )
        if store is None and self.config.save_progress:
            store = ProgressStore(
                self.config.resolved_progress_file(),
                max_age=self.config.max_checkpoint_age,
                max_backups=self.config.max_backups,
            )
        self.store = store
        if cache is None and self.config.enable_cache:
            cache = QueryCache(max_size=self.config.cache_size, ttl=self.config.cache_ttl)
        self.cache = cache
        self._limiter = limiter
        self._owns_limiter = limiter is None
        self.on_phase = on_phase
        self.on_query = on_query
        self._sleep = sleep

        self.session: DiscoverySession | None = None
        self.current_phase: DiscoveryPhase | None = None
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def limiter(self) -> RateLimiter:
        if self._limiter is None:
            self._limiter = RateLimiter(
                queries_per_minute=self.config.queries_per_minute,
                max_concurrent=self.config.max_concurrent,
            )
        return self._limiter

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Operator abort: stop submitting queries and wind the run down.

        Calls already in flight finish.  Calls still queued in the limiter
        come back ``skipped`` without reaching the executor.  The run then
        writes one final checkpoint and returns with the session still
        ``running`` so it can be resumed.
        """
        if not self._stop_requested:
            logger.info("Stop requested, finishing in-flight queries")
        self._stop_requested = True

    def load_or_create_session(self) -> DiscoverySession:
        """Resume from the last checkpoint if it is usable, else start fresh."""
        if self.store is not None:
            checkpoint = self.store.load()
            if checkpoint is not None:
                if not checkpoint.session.is_terminal:
                    session = checkpoint.session
                    logger.info(
                        "Resuming session %s (completed phases: %s)",
                        session.id,
                        ", ".join(p.value for p in session.completed_phases) or "none",
                    )
                    return session
                logger.info(
                    "Last session %s is %s, starting a new one",
                    checkpoint.session.id,
                    checkpoint.session.status.value,
                )
        return DiscoverySession()

    async def run(self, session: DiscoverySession | None = None) -> DiscoverySession:
        """Run every outstanding phase and return the session.

        Raises:
            FatalConfigError: On unusable configuration or rejected
                credentials.  The session is marked ``failed`` and
                checkpointed first.
        """
        self.config.validate(require_credentials=False)
        if session is None:
            session = self.load_or_create_session()
        self.session = session
        self._stop_requested = False
        started = time.monotonic()

        if self.store is not None:
            self.store.start_auto_save(session, self.config.checkpoint_interval)
        try:
            for phase in PHASE_ORDER:
                if self._stop_requested:
                    break
                if session.phase_done(phase):
                    logger.debug("Phase %s already completed, skipping", phase.value)
                    continue
                self.current_phase = phase
                if not self._phase_enabled(phase):
                    logger.info("Phase %s disabled", phase.value)
                    session.mark_phase_done(phase)
                    self._emit_phase(phase, "skipped")
                    continue

                logger.info("Starting phase %s", phase.value)
                self._emit_phase(phase, "started")
                await self._phase_handler(phase)(session)
                if self._stop_requested:
                    logger.info("Phase %s interrupted", phase.value)
                    break
                session.mark_phase_done(phase)
                self._checkpoint(session)
                self._emit_phase(phase, "completed")

            if not self._stop_requested:
                self._finish(session)
        except FatalConfigError as e:
            logger.error("Discovery aborted: %s", e)
            self._stop_requested = True
            session.status = SessionStatus.failed
            session.error = str(e)
            session.touch()
            raise
        finally:
            session.statistics.processing_time += time.monotonic() - started
            if self.store is not None:
                await self.store.stop()
                try:
                    self.store.save(session)
                except PersistenceError as e:
                    logger.warning("Final checkpoint failed: %s", e)
            if self._owns_limiter and self._limiter is not None:
                await self._limiter.close()
                self._limiter = None
            self.current_phase = None
        return session

    def _finish(self, session: DiscoverySession) -> None:
        session.queries = self.optimizer.generate_queries(session)
        session.insights = build_insights(session)
        session.status = SessionStatus.completed
        session.touch()
        self.current_phase = DiscoveryPhase.done
        self._emit_phase(DiscoveryPhase.done, "completed")
        logger.info(
            "Discovery complete: %d record kinds, %d metric groups, "
            "%d relationships, %d queries executed, %d abandoned",
            len(session.entities),
            len(session.metric_groups),
            len(session.relationships),
            session.statistics.queries_executed,
            session.statistics.queries_abandoned,
        )

    def _phase_enabled(self, phase: DiscoveryPhase) -> bool:
        if phase is DiscoveryPhase.metrics:
            return self.config.discover_metrics
        if phase is DiscoveryPhase.relationships:
            return self.config.analyze_relationships
        if phase is DiscoveryPhase.samples:
            return self.config.collect_samples
        return True

    def _phase_handler(
        self, phase: DiscoveryPhase
    ) -> Callable[[DiscoverySession], Awaitable[None]]:
        return {
            DiscoveryPhase.entities: self._discover_entities,
            DiscoveryPhase.metadata: self._discover_metadata,
            DiscoveryPhase.metrics: self._discover_metrics,
            DiscoveryPhase.relationships: self._discover_relationships,
            DiscoveryPhase.samples: self._collect_samples,
        }[phase]

    def _checkpoint(self, session: DiscoverySession) -> None:
        if self.store is None:
            return
        try:
            self.store.checkpoint(session)
        except PersistenceError as e:
            logger.warning("Checkpoint failed, continuing in memory: %s", e)

    def _emit_phase(self, phase: DiscoveryPhase, event: str) -> None:
        if self.on_phase:
            try:
                self.on_phase(phase, event)
            except Exception as e:
                logger.warning("Phase callback failed: %s", e)

    def _emit_query(self, outcome: QueryOutcome) -> None:
        if self.on_query:
            try:
                self.on_query(outcome)
            except Exception as e:
                logger.warning("Query callback failed: %s", e)

    # ------------------------------------------------------------------
    # Query execution with retry, degrade and abandon
    # ------------------------------------------------------------------

    async def run_query(
        self,
        query: str,
        *,
        options: dict[str, Any] | None = None,
        cacheable: bool = True,
    ) -> QueryOutcome:
        """Execute one logical query through the limiter.

        Never raises for per-query failures; the outcome's status says
        what happened.  Only fatal errors propagate.
        """
        session = self.session
        if session is None:
            raise RuntimeError("run_query() called outside of run()")
        phase = self.current_phase
        if self._stop_requested:
            return QueryOutcome(query=query, final_query=query, status="skipped", phase=phase)

        key = make_cache_key(query, options)
        if cacheable and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                session.statistics.cache_hits += 1
                outcome = QueryOutcome(
                    query=query, final_query=query, status="cached", phase=phase, result=cached
                )
                self._emit_query(outcome)
                return outcome

        current = query
        attempts = 0
        degradations = 0
        transient_failures = 0
        started = time.monotonic()

        def outcome_for(status: str, **kwargs: Any) -> QueryOutcome:
            outcome = QueryOutcome(
                query=query,
                final_query=current,
                status=status,
                attempts=attempts,
                degradations=degradations,
                duration=time.monotonic() - started,
                phase=phase,
                **kwargs,
            )
            self._emit_query(outcome)
            return outcome

        def abandon(reason: str) -> QueryOutcome:
            logger.warning("Abandoning query after %d attempts (%s): %s", attempts, reason, current)
            session.record_abandoned(
                AbandonedQuery(query=query, phase=phase, reason=reason, attempts=attempts)
            )
            return outcome_for("abandoned", error=reason)

        while True:
            attempts += 1
            try:
                result = await self.limiter.execute(
                    lambda text=current: self._guarded_call(text, options)
                )
            except _StopRequested:
                attempts -= 1
                return outcome_for("skipped")
            except Exception as exc:
                session.statistics.queries_executed += 1
                session.statistics.queries_failed += 1
                kind = classify_error(exc)

                if kind is ErrorKind.fatal:
                    if isinstance(exc, FatalConfigError):
                        raise
                    raise FatalConfigError(str(exc)) from exc

                if kind is ErrorKind.malformed:
                    logger.debug("Malformed response treated as empty: %s", exc)
                    return outcome_for("empty", error=str(exc))

                if self._stop_requested:
                    return outcome_for("skipped", error=str(exc))

                if kind is ErrorKind.timeout:
                    if degradations >= self.config.max_degrade_attempts:
                        return abandon(f"timeout after {degradations} degradations")
                    degraded = self.optimizer.degrade(current)
                    if degraded == current:
                        return abandon("timeout, window cannot be narrowed further")
                    logger.debug("Query timed out, retrying with narrower window")
                    current = degraded
                    degradations += 1
                    continue

                if transient_failures >= self.config.transient_retries:
                    return abandon(f"transient failure: {exc}")
                transient_failures += 1
                backoff = min(
                    self.config.retry_backoff * 2 ** (transient_failures - 1),
                    self.config.max_retry_backoff,
                )
                logger.debug(
                    "Transient failure (%s), retry %d/%d in %.1fs",
                    exc,
                    transient_failures,
                    self.config.transient_retries,
                    backoff,
                )
                await self._sleep(backoff)
                if self._stop_requested:
                    return outcome_for("skipped", error=str(exc))
                continue

            session.statistics.queries_executed += 1
            if cacheable and self.cache is not None:
                self.cache.set(key, result)
            return outcome_for("ok" if result.results else "empty", result=result)

    async def _guarded_call(
        self, query: str, options: dict[str, Any] | None
    ) -> QueryResult:
        if self._stop_requested:
            raise _StopRequested(query)
        return await self._call(query, options)

    async def _call(self, query: str, options: dict[str, Any] | None) -> QueryResult:
        try:
            return await asyncio.wait_for(
                self.executor(query, options), timeout=self.config.query_timeout
            )
        except TimeoutError as e:
            raise QueryTimeoutError(
                f"Query exceeded {self.config.query_timeout}s", query
            ) from e

    # ------------------------------------------------------------------
    # Phase: entities
    # ------------------------------------------------------------------

    async def _discover_entities(self, session: DiscoverySession) -> None:
        volumes: dict[str, int] = {}

        candidates = self.config.entity_candidates
        if candidates:
            outcome = await self.run_query(
                f"SELECT count(*) FROM {', '.join(candidates)} "
                "FACET eventType() SINCE 1 day ago LIMIT MAX"
            )
            for row in outcome.result.results:
                name = facet_value(row) or row.get("eventType")
                count = numeric_value(row.get("count"))
                if name and count:
                    volumes[str(name)] = int(count)

        # Kinds outside the candidate list
        listing = await self.run_query("SHOW EVENT TYPES SINCE 1 day ago")
        additional: list[str] = []
        for row in listing.result.results:
            name = row.get("eventType") or facet_value(row)
            if name and str(name) not in volumes and str(name) not in additional:
                additional.append(str(name))
        additional = [n for n in additional if should_process_entity(n)]
        additional = additional[: self.config.max_additional_entities]
        if additional:
            outcomes = await gather_or_cancel(
                *(
                    self.run_query(f"SELECT count(*) FROM {name} SINCE 1 day ago")
                    for name in additional
                )
            )
            for name, outcome in zip(additional, outcomes, strict=True):
                first = outcome.result.first or {}
                count = numeric_value(first.get("count"))
                if count:
                    volumes[name] = int(count)

        ranked = sorted(
            (name for name in volumes if should_process_entity(name)),
            key=lambda name: calculate_priority(name, volumes[name]),
            reverse=True,
        )
        for name in ranked[: self.config.max_entities]:
            session.add_entity(EntityDescriptor(name=name, volume=volumes[name]))
        session.touch()
        logger.info(
            "Found %d record kinds (%d kept)",
            len(volumes),
            min(len(ranked), self.config.max_entities),
        )

    # ------------------------------------------------------------------
    # Phase: metadata (entity metadata and attributes)
    # ------------------------------------------------------------------

    async def _discover_metadata(self, session: DiscoverySession) -> None:
        await gather_or_cancel(
            *(self._describe_entity(session, e) for e in list(session.entities))
        )

    async def _describe_entity(
        self, session: DiscoverySession, entity: EntityDescriptor
    ) -> None:
        name = entity.name
        shape = self.optimizer.select_shape(entity.volume)
        guid, hosts, span, keyset = await gather_or_cancel(
            self.run_query(
                f"SELECT uniqueCount(entity.guid) AS 'entities' FROM {name} SINCE 1 hour ago"
            ),
            self.run_query(
                f"SELECT uniqueCount(host) AS 'hosts' FROM {name} "
                "WHERE host IS NOT NULL SINCE 1 hour ago"
            ),
            self.run_query(
                f"SELECT earliest(timestamp) AS 'earliest', latest(timestamp) AS 'latest' "
                f"FROM {name} SINCE 7 days ago"
            ),
            self.run_query(f"SELECT keyset() FROM {name} {shape.clauses()}"),
        )

        metadata = EntityMetadata()
        if guid.result.first:
            value = numeric_value(guid.result.first.get("entities"))
            metadata.entity_count = int(value) if value is not None else None
        if hosts.result.first:
            value = numeric_value(hosts.result.first.get("hosts"))
            metadata.host_count = int(value) if value is not None else None
        if span.result.first:
            metadata.earliest = span.result.first.get("earliest")
            metadata.latest = span.result.first.get("latest")
        entity.metadata = metadata

        keys = parse_keyset(keyset.result.results)
        names = list(keys)[: self.config.max_attributes_per_entity]
        profiles = await gather_or_cancel(
            *(self._profile_attribute(name, attr, keys[attr]) for attr in names)
        )
        attributes = {info.name: info for info in profiles if info is not None}
        entity.merge_attributes(attributes)

        session.statistics.data_points_discovered += len(attributes)
        session.touch()
        logger.debug("%s: %d attributes classified", name, len(attributes))

    async def _profile_attribute(
        self, entity: str, attribute: str, hint: str | None
    ) -> AttributeInfo | None:
        col = _quote(attribute)
        if hint in (None, "numeric"):
            outcome = await self.run_query(
                f"SELECT average({col}) AS 'avg', min({col}) AS 'min', max({col}) AS 'max', "
                f"stddev({col}) AS 'stddev', uniqueCount({col}) AS 'cardinality' "
                f"FROM {entity} WHERE {col} IS NOT NULL SINCE 1 hour ago"
            )
            row = outcome.result.first
            if row and numeric_value(row.get("avg")) is not None:
                return classify_attribute(attribute, row)

        outcome = await self.run_query(
            f"SELECT uniqueCount({col}) AS 'cardinality', latest({col}) AS 'sample' "
            f"FROM {entity} WHERE {col} IS NOT NULL SINCE 1 hour ago"
        )
        return classify_attribute(attribute, outcome.result.first)

    # ------------------------------------------------------------------
    # Phase: metrics
    # ------------------------------------------------------------------

    async def _discover_metrics(self, session: DiscoverySession) -> None:
        sweeps = await gather_or_cancel(
            *(
                self.run_query(
                    f"SELECT uniques(metricName, 1000) AS 'names' FROM Metric "
                    f"WHERE {where} SINCE 1 hour ago"
                )
                for _, where in METRIC_SWEEPS
            )
        )
        metric_names: list[str] = []
        for outcome in sweeps:
            row = outcome.result.first or {}
            found = row.get("names") or row.get("uniques.metricName") or []
            for metric in found:
                if metric not in metric_names:
                    metric_names.append(str(metric))
        logger.info("Found %d metric names", len(metric_names))

        groups = group_metrics(metric_names)
        analysed = await gather_or_cancel(
            *(
                self._analyse_group(name, members)
                for name, members in sorted(groups.items())
            )
        )
        session.metric_groups = list(analysed)
        session.touch()

    async def _analyse_group(self, name: str, members: list[str]) -> MetricGroup:
        chosen = members[: self.config.max_metrics_per_group]
        series = await gather_or_cancel(*(self._analyse_metric(m) for m in chosen))
        kept = [s for s in series if s is not None]
        return MetricGroup(
            name=name,
            members=members,
            series=kept,
            statistics={"metric_count": len(members), "analyzed": len(kept)},
        )

    async def _analyse_metric(self, metric: str) -> MetricSeries | None:
        where = f"WHERE metricName = '{metric}'"
        stats_outcome, dims_outcome = await gather_or_cancel(
            self.run_query(
                "SELECT average(value) AS 'avg', min(value) AS 'min', max(value) AS 'max', "
                "stddev(value) AS 'stddev', latest(value) AS 'latest', "
                "rate(sum(value), 1 minute) AS 'rate', uniqueCount(entity.guid) AS 'entities' "
                f"FROM Metric {where} SINCE 1 hour ago"
            ),
            self.run_query(f"SELECT keyset() FROM Metric {where} SINCE 1 hour ago LIMIT 1"),
        )
        stats = stats_outcome.result.first
        if not stats:
            return None
        dimensions = [
            key
            for key in parse_keyset(dims_outcome.result.results)
            if key not in _NON_DIMENSIONS
        ]
        return MetricSeries(
            name=metric,
            kind=classify_metric_type(metric, stats),
            statistics=stats,
            dimensions=dimensions,
        )

    # ------------------------------------------------------------------
    # Phase: relationships
    # ------------------------------------------------------------------

    async def _discover_relationships(self, session: DiscoverySession) -> None:
        candidates = find_relationship_candidates(session.entities)
        keys = list(candidates)
        outcomes = await gather_or_cancel(
            *(self._verify_join(key, candidates[key], session) for key in keys)
        )
        for key, shared in zip(keys, outcomes, strict=True):
            if shared:
                relationship = make_relationship(key, candidates[key])
                session.relationships = [
                    r for r in session.relationships if r.via != relationship.via
                ]
                session.relationships.append(relationship)
        session.touch()
        logger.info("Verified %d relationships", len(session.relationships))

    async def _verify_join(
        self, key: str, names: list[str], session: DiscoverySession
    ) -> bool:
        alternatives = JOIN_KEYS[key][0]
        first = session.get_entity(names[0])
        attribute = next(
            (alt for alt in alternatives if first is not None and alt in first.attributes),
            alternatives[0],
        )
        outcome = await self.run_query(
            f"SELECT uniqueCount({_quote(attribute)}) AS 'shared' "
            f"FROM {', '.join(names)} SINCE 1 hour ago LIMIT 1"
        )
        row = outcome.result.first or {}
        return bool(numeric_value(row.get("shared")))

    # ------------------------------------------------------------------
    # Phase: samples
    # ------------------------------------------------------------------

    async def _collect_samples(self, session: DiscoverySession) -> None:
        await gather_or_cancel(
            *(self._sample_entity(e) for e in session.entities if e.attributes)
        )
        session.touch()

    async def _sample_entity(self, entity: EntityDescriptor) -> None:
        columns = ", ".join(
            _quote(a) for a in list(entity.attributes)[: self.config.sample_attributes]
        )
        outcome = await self.run_query(
            f"SELECT {columns} FROM {entity.name} SINCE 1 hour ago "
            f"LIMIT {self.config.sample_rows}",
            cacheable=False,
        )
        if outcome.result.results:
            entity.sample_data = outcome.result.results[: self.config.sample_rows]
