"""Shared fixtures: an in-memory database double and definition stores."""

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from oracledb_prometheus_exporter import definitions


class FakeDatabase:
    """In-memory stand-in for the connection lifecycle manager.

    Rows and errors are keyed by query text. Concurrent queries are counted
    so tests can check that only one is ever in flight.
    """

    def __init__(self):
        self.dbtype = 0
        self.rows: dict[str, list[dict[str, str]]] = {}
        self.errors: dict[str, Exception] = {}
        self.ping_errors: list[Exception] = []
        self.reconnect_error: Exception | None = None
        self.query_hook: Callable[[str], None] | None = None
        self.queries: list[tuple[str, float]] = []
        self.pings = 0
        self.reconnects = 0
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def ping(self) -> None:
        self.pings += 1
        if self.ping_errors:
            raise self.ping_errors.pop(0)

    def reconnect(self) -> None:
        self.reconnects += 1
        if self.reconnect_error is not None:
            raise self.reconnect_error

    def close(self) -> None:
        self.closed = True

    def query(self, sql: str, timeout: float) -> list[dict[str, str]]:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.queries.append((sql, timeout))
        try:
            if self.query_hook is not None:
                self.query_hook(sql)
            if sql in self.errors:
                raise self.errors[sql]
            return [dict(row) for row in self.rows.get(sql, [])]
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def fake_db() -> FakeDatabase:
    """Healthy database double with no rows configured."""
    return FakeDatabase()


@pytest.fixture
def write_toml(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write TOML text to a file under tmp_path and return its path."""

    def write(name: str, text: str) -> Path:
        path = tmp_path / name
        path.write_text(text)
        return path

    return write


@pytest.fixture
def make_store(
    write_toml: Callable[[str, str], Path],
) -> Callable[[str], definitions.DefinitionStore]:
    """Build a store whose only definitions come from the given TOML text.

    The built-in defaults are replaced by an empty file so tests control
    exactly which queries run.
    """

    def make(custom_toml: str) -> definitions.DefinitionStore:
        defaults = write_toml("empty_defaults.toml", "")
        custom = write_toml("custom.toml", custom_toml)
        return definitions.DefinitionStore(sources=[custom], defaults_path=defaults)

    return make
