"""HTTP server for the Oracle Database Prometheus Exporter."""

import contextlib
import json
import logging
import os
import pathlib
import signal
from typing import Any

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import cache, collector, database, definitions, scheduler, scrape

CONFIG_ENV_VAR = "ORACLEDB_EXPORTER_CONFIG_PATH"
logger = structlog.get_logger(__name__)


class ExporterConfig(pydantic.BaseModel):
    """Configuration for the Oracle Database Prometheus Exporter."""

    connect_string: str = pydantic.Field(
        description="Oracle connect string (EZConnect, TNS alias or descriptor)",
    )
    user: str = pydantic.Field("", description="Database user name")
    password: pydantic.SecretStr = pydantic.Field(
        pydantic.SecretStr(""),
        description="Database password; empty selects external authentication",
    )
    password_file: str | None = pydantic.Field(
        None,
        description="Path to file containing the database password",
    )
    db_role: str = pydantic.Field(
        "",
        description="Administrative role to connect with (SYSDBA or SYSOPER)",
    )
    config_dir: str | None = pydantic.Field(
        None,
        description="Directory containing tnsnames.ora (TNS_ADMIN)",
    )
    max_idle_conns: int = pydantic.Field(
        0,
        description="Connections kept open in the pool while idle",
        ge=0,
    )
    max_open_conns: int = pydantic.Field(
        10,
        description="Maximum number of open connections",
        gt=0,
    )
    query_timeout: float = pydantic.Field(
        database.DEFAULT_QUERY_TIMEOUT,
        description="Default query timeout in seconds",
        gt=0,
    )
    custom_metrics: list[str] = pydantic.Field(
        default_factory=list,
        description="Paths of custom metric definition files",
    )
    default_metrics_file: str | None = pydantic.Field(
        None,
        description="File replacing the built-in metric definitions",
    )
    scrape_interval: float = pydantic.Field(
        0.0,
        description="Seconds between scheduled scrapes; 0 scrapes on every request",
        ge=0,
    )
    port: int = pydantic.Field(9161, description="HTTP server port", gt=0, lt=65536)
    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for metrics endpoint",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")

    @pydantic.field_validator("custom_metrics", mode="before")
    @classmethod
    def _split_custom_metrics(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [path.strip() for path in value.split(",") if path.strip()]
        return value

    def resolve_password(self) -> str:
        """Return the configured password, reading password_file if needed."""
        password = self.password.get_secret_value()
        if password or not self.password_file:
            return password
        path = pathlib.Path(self.password_file)
        if not path.exists():
            msg = f"Password file not found: {self.password_file}"
            raise FileNotFoundError(msg)
        return path.read_text().strip()

    def connection_settings(self) -> database.ConnectionSettings:
        """Build the connection settings for the lifecycle manager."""
        return database.ConnectionSettings(
            connect_string=self.connect_string,
            user=self.user,
            password=self.resolve_password(),
            db_role=self.db_role,
            config_dir=self.config_dir,
            max_idle_conns=self.max_idle_conns,
            max_open_conns=self.max_open_conns,
        )


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: str) -> ExporterConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return ExporterConfig(**data)


def terminate(exc: BaseException) -> None:
    """Stop the process after an unrecoverable error.

    Sends SIGTERM to the own process so the ASGI server shuts down through
    its normal path (lifespan shutdown included).
    """
    logger.critical("Terminating exporter", error=str(exc))
    os.kill(os.getpid(), signal.SIGTERM)


def create_registry_with_collector(
    db_collector: collector.OracleDbCollector,
) -> prometheus_client.core.CollectorRegistry:
    """Create a Prometheus registry holding the Oracle collector.

    Creates a custom registry (not the global one). Registration calls the
    collector's describe(), which in on-demand mode runs a first scrape.

    Args:
        db_collector: Collector wired to the orchestrator.

    Returns:
        Configured Prometheus registry.
    """
    registry = prometheus_client.core.CollectorRegistry()
    registry.register(db_collector)
    logger.info(
        "Registered collector",
        collector="oracledb",
        scheduled=db_collector.scheduled,
    )
    return registry


def create_starlette_app(
    metrics_path: str,
    registry: prometheus_client.core.CollectorRegistry,
    scrape_scheduler: scheduler.ScrapeScheduler | None = None,
    db: database.OracleDatabase | None = None,
    on_fatal: scheduler.FatalHandler = terminate,
) -> starlette.applications.Starlette:
    """Create a Starlette application for serving Prometheus metrics.

    Args:
        metrics_path: URL path for metrics endpoint (e.g., "/metrics").
        registry: Prometheus collector registry.
        scrape_scheduler: Started and stopped with the application in
            scheduled mode.
        db: Database closed on application shutdown.
        on_fatal: Called when a definition reload fails during a request.

    Returns:
        Configured Starlette application.
    """

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Generate and serve Prometheus metrics.

        Args:
            request: The incoming HTTP request.

        Returns:
            PlainTextResponse with metrics in Prometheus exposition format.
        """
        logger.info(
            "HTTP request",
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
        )
        try:
            metrics_output = prometheus_client.generate_latest(registry)
        except definitions.DefinitionReloadError as exc:
            logger.exception("Failed to reload metric definitions")
            on_fatal(exc)
            return starlette.responses.PlainTextResponse(
                content="metric definitions failed to load\n",
                status_code=500,
            )
        return starlette.responses.PlainTextResponse(
            content=metrics_output,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: starlette.applications.Starlette):
        if scrape_scheduler is not None:
            scrape_scheduler.start()
        try:
            yield
        finally:
            if scrape_scheduler is not None:
                scrape_scheduler.stop()
            if db is not None:
                db.close()

    routes = [
        starlette.routing.Route(metrics_path, metrics_endpoint, methods=["GET"]),
    ]

    return starlette.applications.Starlette(routes=routes, lifespan=lifespan)


def create_exporter(
    config: ExporterConfig,
    db: database.OracleDatabase | None = None,
) -> starlette.applications.Starlette:
    """Construct the exporter ASGI app from validated config.

    Definition files are loaded before serving so that a broken file stops
    the exporter at startup. A database that cannot be reached at startup is
    not fatal: the orchestrator reconnects on the next scrape.
    """
    if db is None:
        db = database.OracleDatabase(config.connection_settings())
        try:
            db.connect()
        except database.DatabaseError:
            logger.warning("Database not reachable at startup", dsn=db.masked_dsn)

    store = definitions.DefinitionStore(
        sources=config.custom_metrics,
        defaults_path=config.default_metrics_file,
    )
    store.refresh()
    logger.info("Loaded metric definitions", count=len(store.definitions))

    orchestrator = scrape.ScrapeOrchestrator(
        database=db,
        store=store,
        query_timeout=config.query_timeout,
    )

    scrape_scheduler = None
    if config.scrape_interval > 0:
        snapshot: cache.SnapshotCache = cache.SnapshotCache()
        db_collector = collector.OracleDbCollector(orchestrator, snapshot=snapshot)
        scrape_scheduler = scheduler.ScrapeScheduler(
            db_collector,
            interval=config.scrape_interval,
            on_fatal=terminate,
        )
    else:
        db_collector = collector.OracleDbCollector(orchestrator)

    registry = create_registry_with_collector(db_collector)

    return create_starlette_app(
        metrics_path=config.metrics_path,
        registry=registry,
        scrape_scheduler=scrape_scheduler,
        db=db,
    )


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the exporter ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, "/config.json")
    config = load_config(resolved_path)
    configure_logging(config.log_level)
    return create_exporter(config)
