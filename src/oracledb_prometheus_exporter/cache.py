"""Thread-safe snapshot of the last scheduled scrape.

In scheduled mode a background timer produces metric families and pull
requests only read them. The snapshot is replaced as a whole so a reader
never observes a partially populated result.
"""

import time
from collections.abc import Iterable
from threading import Lock
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SnapshotCache(Generic[T]):
    """Holds the most recent complete scrape result.

    Writers hand over a full result that replaces the previous one in a
    single reference swap; readers get an immutable tuple.
    """

    def __init__(self):
        """Initialize an empty snapshot."""
        self._lock = Lock()
        self._items: tuple[T, ...] = ()
        self._stored_at: float | None = None

    def replace(self, items: Iterable[T]) -> None:
        """Store a new snapshot, replacing the previous one atomically.

        Args:
            items: Complete scrape result; materialized before the swap.
        """
        snapshot = tuple(items)
        with self._lock:
            self._items = snapshot
            self._stored_at = time.time()
        logger.debug("Stored scrape snapshot", items=len(snapshot))

    def read(self) -> tuple[tuple[T, ...], float | None]:
        """Return the current snapshot.

        Returns:
            Tuple of (items, age) where:
            - items: Snapshot contents, empty before the first store
            - age: Seconds since the snapshot was stored, None if never stored
        """
        with self._lock:
            items, stored_at = self._items, self._stored_at
        age = time.time() - stored_at if stored_at is not None else None
        if age is not None:
            logger.debug("Using cached data", age_seconds=round(age, 2))
        return items, age
