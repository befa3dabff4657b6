"""Oracle database connection lifecycle manager.

Owns the python-oracledb connection pool: initial connect, passive
reconnect when asked, health check and query execution with a per-call
timeout. Driver errors are translated into the small exception hierarchy
the scrape orchestrator understands.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any

import oracledb
import structlog

from .rows import DecodedRow, decode_rows

logger = structlog.get_logger(__name__)

DEFAULT_QUERY_TIMEOUT = 5.0

CLIENT_INFO = "oracledb_exporter"

# Driver error codes meaning the session or pool is gone for good.
SESSION_CLOSED_CODES = frozenset(
    {
        "DPY-1001",  # not connected to database
        "DPY-1002",  # connection pool is not open
        "DPY-4011",  # the database or network closed the connection
        "DPI-1010",  # not connected
        "DPI-1080",  # connection was closed by ORA-%d
        "ORA-03113",  # end-of-file on communication channel
        "ORA-03114",  # not connected to ORACLE
        "ORA-03135",  # connection lost contact
    },
)

# Driver error codes raised when call_timeout expires.
TIMEOUT_CODES = frozenset({"DPY-4024", "DPI-1067", "ORA-03156"})

_AUTH_MODES = {
    "SYSDBA": oracledb.AUTH_MODE_SYSDBA,
    "SYSOPER": oracledb.AUTH_MODE_SYSOPER,
}


class DatabaseError(Exception):
    """Raised when the database cannot serve a request."""


class SessionClosedError(DatabaseError):
    """Raised when the pool or its session has been closed."""


class QueryTimeoutError(DatabaseError):
    """Raised when a query runs longer than its timeout."""


def mask_dsn(dsn: str) -> str:
    """Hide everything before the last ``@`` of a connect string."""
    _, sep, host = dsn.rpartition("@")
    if sep:
        return f"***@{host}"
    return dsn


def _error_code(exc: oracledb.Error) -> str:
    """Extract the full driver error code (e.g. ``ORA-03113``) if present."""
    if exc.args and hasattr(exc.args[0], "full_code"):
        return exc.args[0].full_code or ""
    return ""


def _translate_error(exc: oracledb.Error) -> DatabaseError:
    code = _error_code(exc)
    if code in SESSION_CLOSED_CODES:
        return SessionClosedError(str(exc))
    if code in TIMEOUT_CODES:
        return QueryTimeoutError(str(exc))
    return DatabaseError(str(exc))


@dataclass(frozen=True)
class ConnectionSettings:
    """Connection identity and pool bounds for the Oracle database.

    An empty password selects external (OS or wallet) authentication and the
    user name is ignored. ``db_role`` is either empty, ``SYSDBA`` or
    ``SYSOPER``.
    """

    connect_string: str
    user: str = ""
    password: str = ""
    db_role: str = ""
    config_dir: str | None = None
    max_idle_conns: int = 0
    max_open_conns: int = 10

    @property
    def external_auth(self) -> bool:
        return self.password == ""


class OracleDatabase:
    """Connection lifecycle manager for the exporter's Oracle database.

    The manager is passive: it connects when asked and reconnects only when
    the scrape orchestrator detects a closed session. The pool itself is
    thread-safe; this class only guards swapping it.

    Can be used as a context manager for automatic cleanup.
    """

    def __init__(self, settings: ConnectionSettings):
        """Initialize the manager without connecting.

        Args:
            settings: Connection identity and pool bounds.

        Raises:
            ValueError: If the connect string is empty, the role is unknown
                or the pool bounds are inconsistent.
        """
        if not settings.connect_string:
            msg = "connect_string cannot be empty"
            raise ValueError(msg)
        role = settings.db_role.upper()
        if role and role not in _AUTH_MODES:
            msg = f"Unsupported database role: {settings.db_role}"
            raise ValueError(msg)
        if settings.max_open_conns < 1 or settings.max_idle_conns < 0:
            msg = "max_open_conns must be positive and max_idle_conns non-negative"
            raise ValueError(msg)
        if settings.max_idle_conns > settings.max_open_conns:
            msg = "max_idle_conns cannot exceed max_open_conns"
            raise ValueError(msg)

        self._settings = settings
        self._lock = threading.Lock()
        self._pool: Any = None
        self.dbtype = 0
        self.is_sysdba = ""

    @property
    def masked_dsn(self) -> str:
        return mask_dsn(self._settings.connect_string)

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and close the pool."""
        self.close()

    def _pool_params(self) -> dict[str, Any]:
        settings = self._settings
        params: dict[str, Any] = {
            "dsn": settings.connect_string,
            "min": settings.max_idle_conns,
            "max": settings.max_open_conns,
            "increment": 1,
            "max_lifetime_session": 0,
            "getmode": oracledb.POOL_GETMODE_WAIT,
        }
        if settings.external_auth:
            logger.info(
                "Database password not specified; using external authentication "
                "and ignoring the configured user",
            )
            params["externalauth"] = True
            params["homogeneous"] = False
        else:
            logger.info("Using username/password authentication")
            params["user"] = settings.user
            params["password"] = settings.password
        if settings.config_dir:
            params["config_dir"] = settings.config_dir
        role = settings.db_role.upper()
        if role:
            params["mode"] = _AUTH_MODES[role]
        return params

    def connect(self) -> None:
        """Open the connection pool and read session metadata.

        Setting the client identifier and reading the container id and DBA
        status are best-effort: failures are logged and never raised.

        Raises:
            DatabaseError: If the driver refuses to create the pool.
        """
        logger.debug("Launching connection", dsn=self.masked_dsn)
        params = self._pool_params()
        try:
            pool = oracledb.create_pool(**params)
        except oracledb.Error as exc:
            logger.exception("Failed to create connection pool", dsn=self.masked_dsn)
            raise _translate_error(exc) from exc

        with self._lock:
            self._pool = pool
        logger.debug(
            "Configured connection pool",
            dsn=self.masked_dsn,
            max_idle_conns=params["min"],
            max_open_conns=params["max"],
        )
        self._read_session_metadata(pool)

    def _read_session_metadata(self, pool: Any) -> None:
        try:
            with pool.acquire() as connection, connection.cursor() as cursor:
                try:
                    cursor.callproc(
                        "dbms_application_info.set_client_info",
                        [CLIENT_INFO],
                    )
                except oracledb.Error:
                    logger.info("Could not set CLIENT_INFO")

                try:
                    cursor.execute("select sys_context('USERENV', 'CON_ID') from dual")
                    (con_id,) = cursor.fetchone()
                    self.dbtype = int(con_id)
                except (oracledb.Error, TypeError, ValueError) as exc:
                    logger.info("Could not read database type", error=str(exc))

                try:
                    cursor.execute("select sys_context('USERENV', 'ISDBA') from dual")
                    (self.is_sysdba,) = cursor.fetchone()
                except (oracledb.Error, TypeError) as exc:
                    logger.info("Could not check database role", error=str(exc))
        except oracledb.Error as exc:
            logger.info("Could not read session metadata", error=str(exc))
            return

        logger.info(
            "Connected to database",
            dsn=self.masked_dsn,
            dbtype=self.dbtype,
            sysdba=self.is_sysdba,
        )

    def _require_pool(self) -> Any:
        with self._lock:
            pool = self._pool
        if pool is None:
            msg = "connection pool is not open"
            raise SessionClosedError(msg)
        return pool

    def ping(self) -> None:
        """Check that a session can be acquired and answers a round trip.

        Raises:
            SessionClosedError: If the pool or the session is closed.
            DatabaseError: For any other connectivity failure.
        """
        pool = self._require_pool()
        try:
            with pool.acquire() as connection:
                connection.ping()
        except oracledb.Error as exc:
            raise _translate_error(exc) from exc

    def query(self, sql: str, timeout: float = DEFAULT_QUERY_TIMEOUT) -> list[DecodedRow]:
        """Run one query and return all of its decoded rows.

        The driver call timeout bounds each round trip; the whole fetch is
        additionally bounded by a deadline checked between rows, so a result
        set spread over many round trips cannot outlive the timeout by more
        than one round trip.

        Args:
            sql: Statement text.
            timeout: Seconds allowed for the whole query, fetch included.

        Returns:
            Decoded rows in cursor order.

        Raises:
            QueryTimeoutError: If the call timeout expires.
            SessionClosedError: If the session was closed underneath.
            DatabaseError: For any other driver error.
        """
        pool = self._require_pool()
        deadline = time.monotonic() + timeout
        try:
            with pool.acquire() as connection:
                connection.call_timeout = max(1, int(timeout * 1000))
                with connection.cursor() as cursor:
                    cursor.execute(sql)
                    return self._fetch_all(cursor, deadline, timeout)
        except oracledb.Error as exc:
            raise _translate_error(exc) from exc

    @staticmethod
    def _fetch_all(cursor: Any, deadline: float, timeout: float) -> list[DecodedRow]:
        rows = []
        for row in decode_rows(cursor):
            if time.monotonic() > deadline:
                msg = f"query exceeded its {timeout}s timeout while fetching rows"
                raise QueryTimeoutError(msg)
            rows.append(row)
        return rows

    def reconnect(self) -> None:
        """Drop the current pool and connect again."""
        logger.info("Reconnecting to database", dsn=self.masked_dsn)
        self.close()
        self.connect()

    def close(self) -> None:
        """Close the pool if open; close errors are logged, not raised."""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is None:
            return
        try:
            pool.close(force=True)
        except oracledb.Error as exc:
            logger.warning("Error while closing connection pool", error=str(exc))
