"""Prometheus collector facade over the scrape orchestrator.

Supports two consumption modes, fixed when the collector is built:

- on-demand: every collect() runs one full scrape cycle, serialized with
  any other collect() in progress, and streams the results;
- scheduled: a timer calls scrape_into_snapshot() and collect() only
  returns the last stored snapshot.
"""

import copy
import threading
from collections.abc import Iterator

import structlog
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .cache import SnapshotCache
from .scrape import ScrapeOrchestrator

logger = structlog.get_logger(__name__)


class OracleDbCollector(Collector):
    """Prometheus collector for Oracle database metrics.

    Wraps a ScrapeOrchestrator. Passing a SnapshotCache selects scheduled
    mode; without one every collection triggers a fresh scrape.
    """

    def __init__(
        self,
        orchestrator: ScrapeOrchestrator,
        snapshot: SnapshotCache[Metric] | None = None,
    ):
        """Initialize the collector.

        Args:
            orchestrator: Runs scrape cycles.
            snapshot: Storage for scheduled scrapes; None for on-demand mode.
        """
        self._orchestrator = orchestrator
        self._snapshot = snapshot

        # Exclusive scrape lock: cycles never interleave
        self._scrape_lock = threading.Lock()

    @property
    def scheduled(self) -> bool:
        return self._snapshot is not None

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for a Prometheus scrape.

        Yields:
            Metric families from a fresh scrape (on-demand mode) or from the
            last stored snapshot (scheduled mode).
        """
        if self._snapshot is not None:
            families, _age = self._snapshot.read()
            yield from families
            return

        with self._scrape_lock:
            yield from self._orchestrator.scrape()

    def describe(self) -> Iterator[Metric]:
        """Describe the produced metrics by running one collection.

        The set of metrics depends on the configured queries and on the
        database content, so it cannot be known without scraping. Only the
        family shapes are reported; samples are dropped.
        """
        for family in self.collect():
            shape = copy.copy(family)
            shape.samples = []
            yield shape

    def scrape_into_snapshot(self, tick: float) -> int:
        """Run one scheduled scrape cycle and store its result.

        Args:
            tick: Time of the timer firing.

        Returns:
            Number of metric families stored.

        Raises:
            RuntimeError: If the collector is in on-demand mode.
            DefinitionReloadError: If changed definitions fail to load; the
                previous snapshot is kept.
        """
        if self._snapshot is None:
            msg = "scrape_into_snapshot requires a collector in scheduled mode"
            raise RuntimeError(msg)

        with self._scrape_lock:
            families = list(self._orchestrator.scrape(tick))
        self._snapshot.replace(families)
        return len(families)
