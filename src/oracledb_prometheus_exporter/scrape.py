"""Scrape orchestration.

One scrape cycle pings the database (reconnecting once if the session was
closed), refreshes the metric definitions when their sources changed, runs
every definition's query in a thread pool and turns the rows of all
definitions into metric families at once, so definitions producing the
same metric name share one family. Queries share one execution permit so
only one is in flight against the database at any time; validation and
materialization run outside of it. Meta-metrics describing the cycle are
yielded last.
"""

import threading
import time
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Protocol

import structlog
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .database import DEFAULT_QUERY_TIMEOUT, DatabaseError, SessionClosedError
from .database.rows import DecodedRow
from .definitions import DefinitionConfigError, DefinitionStore, MetricDefinition
from .materializer import (
    NAMESPACE,
    MetricSample,
    build_fq_name,
    build_metric_families,
    materialize,
)

logger = structlog.get_logger(__name__)

EXPORTER_SUBSYSTEM = "exporter"

MAX_WORKERS = 16


class Database(Protocol):
    """What the orchestrator needs from the connection lifecycle manager."""

    dbtype: int

    def ping(self) -> None: ...

    def reconnect(self) -> None: ...

    def query(self, sql: str, timeout: float) -> list[DecodedRow]: ...


class ZeroResultError(Exception):
    """Raised when a query succeeds but yields no usable metric samples."""


# Errors reported without a traceback; anything else is unexpected
EXPECTED_ERRORS = (DatabaseError, DefinitionConfigError, ZeroResultError)


@dataclass
class DefinitionResult:
    """Outcome of running one definition within a cycle."""

    definition: MetricDefinition
    started: float
    samples: list[MetricSample] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ignorable(self) -> bool:
        """Zero-result errors on definitions that opted out are not reported."""
        return (
            isinstance(self.error, ZeroResultError)
            and self.definition.ignore_zero_result
        )


class ScrapeOrchestrator:
    """Runs scrape cycles against one database and one definition store.

    Counters that outlive a cycle (total scrapes, errors per context, last
    successful run per definition) are kept on the instance rather than in
    registered prometheus_client metrics, and reported as metric families.
    """

    def __init__(
        self,
        database: Database,
        store: DefinitionStore,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        namespace: str = NAMESPACE,
        max_workers: int = MAX_WORKERS,
    ):
        """Initialize the orchestrator.

        Args:
            database: Connection lifecycle manager.
            store: Holder of the active metric definitions.
            query_timeout: Default per-query timeout in seconds.
            namespace: First segment of every metric name.
            max_workers: Upper bound on concurrent definition tasks.
        """
        if query_timeout <= 0:
            msg = "query_timeout must be positive"
            raise ValueError(msg)
        self._database = database
        self._store = store
        self._query_timeout = query_timeout
        self._namespace = namespace
        self._max_workers = max_workers

        # Single permit: only one query in flight against the database
        self._execution_permit = threading.Semaphore(1)

        self._state_lock = threading.Lock()
        self._total_scrapes = 0
        self._scrape_errors: dict[str, int] = {}
        self._last_run: dict[str, float] = {}
        self._last_samples: dict[str, list[MetricSample]] = {}

        self.last_duration = 0.0
        self.last_error = False
        self.up = False

    def _meta_name(self, name: str, subsystem: str = EXPORTER_SUBSYSTEM) -> str:
        return build_fq_name(self._namespace, subsystem, name)

    def scrape(self, tick: float | None = None) -> Iterator[Metric]:
        """Run one scrape cycle.

        Args:
            tick: Time of the scheduler firing, or None for on-demand scrapes.
                Per-definition minimum intervals only apply when set.

        Yields:
            Metric families built from the samples of all definitions once
            every task finished, followed by the meta-metrics.

        Raises:
            DefinitionReloadError: If changed definitions fail to load.
        """
        started = time.time()
        with self._state_lock:
            self._total_scrapes += 1

        failures: list[DefinitionResult] = []
        up = self._ping()
        if up:
            logger.debug("Successfully pinged database")
            if self._store.refresh():
                self._forget_removed(self._store.definitions)
            yield from self._fan_out(self._store.definitions, tick, failures)

        yield from self._finalize(started, up, failures)

    def _ping(self) -> bool:
        try:
            self._database.ping()
        except SessionClosedError as exc:
            logger.info("Database session closed, reconnecting", error=str(exc))
            try:
                self._database.reconnect()
            except DatabaseError:
                logger.exception("Error reconnecting to database")
        except DatabaseError as exc:
            logger.debug("Ping failed", error=str(exc))
        else:
            return True

        try:
            self._database.ping()
        except DatabaseError:
            logger.exception("Error pinging database")
            return False
        return True

    def _fan_out(
        self,
        definitions: Sequence[MetricDefinition],
        tick: float | None,
        failures: list[DefinitionResult],
    ) -> Iterator[Metric]:
        if not definitions:
            return
        samples: list[MetricSample] = []
        workers = max(1, min(self._max_workers, len(definitions)))
        with ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="scrape",
        ) as executor:
            futures = [
                executor.submit(self._run_definition, definition, tick)
                for definition in definitions
            ]
            for future in as_completed(futures):
                result = future.result()
                if result.error is not None:
                    failures.append(result)
                samples.extend(result.samples)
        yield from build_metric_families(samples)

    def _forget_removed(self, definitions: Sequence[MetricDefinition]) -> None:
        active = {definition.identity for definition in definitions}
        with self._state_lock:
            for state in (self._last_run, self._last_samples):
                for identity in state.keys() - active:
                    del state[identity]

    def _is_due(self, definition: MetricDefinition, tick: float | None) -> bool:
        if tick is None:
            return True
        interval = definition.min_interval()
        if interval is None:
            return True
        with self._state_lock:
            last_run = self._last_run.get(definition.identity)
        return last_run is None or tick - last_run >= interval

    def _run_definition(
        self,
        definition: MetricDefinition,
        tick: float | None,
    ) -> DefinitionResult:
        result = DefinitionResult(definition=definition, started=time.time())
        logger.debug(
            "About to scrape metric",
            context=definition.context,
            metrics_desc=definition.metrics_desc,
            metrics_type=definition.metrics_type,
            labels=definition.labels,
            field_to_append=definition.field_to_append,
            ignore_zero_result=definition.ignore_zero_result,
        )
        try:
            result.samples = self._query_definition(definition, tick)
        except Exception as exc:  # noqa: BLE001
            result.error = exc
        return result

    def _query_definition(
        self,
        definition: MetricDefinition,
        tick: float | None,
    ) -> list[MetricSample]:
        problems = definition.problems()
        if problems:
            raise DefinitionConfigError("; ".join(problems))

        if not self._is_due(definition, tick):
            logger.debug(
                "Skipping metric until its interval elapses",
                context=definition.context,
            )
            with self._state_lock:
                return list(self._last_samples.get(definition.identity, []))

        timeout = definition.timeout(self._query_timeout)
        with self._execution_permit:
            rows = self._database.query(definition.request, timeout)

        samples: list[MetricSample] = []
        for row in rows:
            row_samples, _ = materialize(row, definition, self._namespace)
            samples.extend(row_samples)
        logger.debug(
            "Materialized metric",
            context=definition.context,
            samples=len(samples),
        )

        if not samples and not definition.ignore_zero_result:
            msg = f"query returned no usable metrics (context={definition.context!r})"
            raise ZeroResultError(msg)

        if tick is not None:
            with self._state_lock:
                self._last_run[definition.identity] = tick
                self._last_samples[definition.identity] = samples
        return samples

    def _finalize(
        self,
        started: float,
        up: bool,
        failures: list[DefinitionResult],
    ) -> Iterator[Metric]:
        duration = time.time() - started
        reported = [result for result in failures if not result.ignorable]
        for result in reported:
            logger.error(
                "Error scraping metric",
                context=result.definition.context,
                metrics_desc=list(result.definition.metrics_desc),
                duration_seconds=round(time.time() - result.started, 3),
                error=str(result.error),
                error_type=type(result.error).__name__,
                exc_info=(
                    None
                    if isinstance(result.error, EXPECTED_ERRORS)
                    else result.error
                ),
            )

        with self._state_lock:
            for result in reported:
                context = result.definition.context
                self._scrape_errors[context] = self._scrape_errors.get(context, 0) + 1
            total_scrapes = self._total_scrapes
            scrape_errors = dict(self._scrape_errors)

        errored = not up or bool(reported)
        self.last_duration = duration
        self.last_error = errored
        self.up = up

        yield GaugeMetricFamily(
            self._meta_name("last_scrape_duration_seconds"),
            "Duration of the last scrape of metrics from Oracle DB.",
            value=duration,
        )
        yield CounterMetricFamily(
            self._meta_name("scrapes_total"),
            "Total number of times Oracle DB was scraped for metrics.",
            value=total_scrapes,
        )
        yield GaugeMetricFamily(
            self._meta_name("last_scrape_error"),
            "Whether the last scrape of metrics from Oracle DB resulted in an "
            "error (1 for error, 0 for success).",
            value=1 if errored else 0,
        )
        scrape_errors_family = CounterMetricFamily(
            self._meta_name("scrape_errors_total"),
            "Total number of times an error occurred scraping a Oracle database.",
            labels=["collector"],
        )
        for context, count in scrape_errors.items():
            scrape_errors_family.add_metric([context], count)
        yield scrape_errors_family
        yield GaugeMetricFamily(
            self._meta_name("up", subsystem=""),
            "Whether the Oracle database server is up.",
            value=1 if up else 0,
        )
        yield GaugeMetricFamily(
            self._meta_name("dbtype", subsystem=""),
            "Type of database the exporter is connected to "
            "(0=non-CDB, 1=CDB, >1=PDB).",
            value=self._database.dbtype,
        )
