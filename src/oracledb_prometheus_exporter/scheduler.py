"""Timer-driven scrapes for scheduled mode.

Runs a scrape cycle immediately and then at a fixed period on a daemon
thread, storing each result as the collector's snapshot. Firings are
deadline based so slow scrapes do not make the period drift; missed
firings are dropped rather than queued.
"""

import threading
import time
from collections.abc import Callable

import structlog

from .collector import OracleDbCollector
from .definitions import DefinitionReloadError

logger = structlog.get_logger(__name__)

FatalHandler = Callable[[BaseException], None]


def _log_fatal(exc: BaseException) -> None:
    logger.critical("Scheduled scrapes stopped", error=str(exc))


class ScrapeScheduler:
    """Background timer that keeps a scheduled collector's snapshot fresh."""

    def __init__(
        self,
        collector: OracleDbCollector,
        interval: float,
        on_fatal: FatalHandler = _log_fatal,
    ):
        """Initialize the scheduler without starting it.

        Args:
            collector: Collector in scheduled mode.
            interval: Seconds between two firings.
            on_fatal: Called from the timer thread with the error that stopped
                it (a failed definition reload).

        Raises:
            ValueError: If interval is not positive or the collector is in
                on-demand mode.
        """
        if interval <= 0:
            msg = "interval must be positive"
            raise ValueError(msg)
        if not collector.scheduled:
            msg = "collector must be in scheduled mode"
            raise ValueError(msg)
        self._collector = collector
        self._interval = interval
        self._on_fatal = on_fatal
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start firing on a daemon thread; a no-op if already running."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="scheduled-scrapes",
            daemon=True,
        )
        self._thread.start()
        logger.info("Started scheduled scrapes", interval_seconds=self._interval)

    def stop(self, timeout: float | None = None) -> None:
        """Ask the timer thread to stop and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Stopped scheduled scrapes")

    def fire(self, tick: float) -> bool:
        """Run one scheduled scrape.

        Returns:
            False if a fatal error means no further firing should happen.
        """
        try:
            families = self._collector.scrape_into_snapshot(tick)
        except DefinitionReloadError as exc:
            logger.exception("Failed to reload metric definitions")
            self._on_fatal(exc)
            return False
        except Exception:
            logger.exception("Scheduled scrape failed")
            return True
        logger.debug("Scheduled scrape finished", families=families)
        return True

    def _run(self) -> None:
        next_tick = time.time()
        while self.fire(next_tick):
            next_tick += self._interval
            now = time.time()
            if next_tick < now:
                next_tick = now
            if self._stop.wait(next_tick - now):
                return
