"""Oracle database access package.

Provides the connection lifecycle manager used by the scrape orchestrator
and the row decoder that turns cursor rows into plain string mappings.
Metric interpretation of the rows is handled by the materializer.

Exports:
    OracleDatabase: Pool owner with connect, ping, query and reconnect.
    ConnectionSettings: Connection identity and pool bounds.
    DatabaseError: Base class for errors raised by this package.
    SessionClosedError: Raised when the database session is gone.
    QueryTimeoutError: Raised when a query exceeds its timeout.
    decode_rows: Lazy cursor-to-mapping decoder.
    DEFAULT_QUERY_TIMEOUT: Default per-query timeout in seconds.
"""

from .client import (
    DEFAULT_QUERY_TIMEOUT,
    ConnectionSettings,
    DatabaseError,
    OracleDatabase,
    QueryTimeoutError,
    SessionClosedError,
)
from .rows import decode_rows

__all__ = [
    "DEFAULT_QUERY_TIMEOUT",
    "ConnectionSettings",
    "DatabaseError",
    "OracleDatabase",
    "QueryTimeoutError",
    "SessionClosedError",
    "decode_rows",
]
