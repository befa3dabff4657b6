"""Metric definitions and the store that holds the active set.

A metric definition is one SQL query plus the rules for turning its rows
into metrics. Definitions are decoded from TOML files (``[[metric]]``
tables), validated into immutable pydantic models and published as a whole
tuple, so a scrape cycle never observes a half-loaded set.
"""

import hashlib
import re
import threading
import tomllib
from collections.abc import Sequence
from importlib import resources
from pathlib import Path
from typing import Any

import pydantic
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_METRICS_RESOURCE = "default_metrics.toml"

METRIC_KINDS = frozenset({"gauge", "counter", "histogram"})

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class DefinitionConfigError(Exception):
    """Raised when a single definition is unusable; its metrics are skipped."""


class DefinitionReloadError(Exception):
    """Raised when a definition source cannot be decoded.

    Fatal by contract: running with a partially loaded definition set would
    silently drop configured metrics, so the process runner terminates.
    """


def parse_duration(value: str) -> float:
    """Convert a duration such as ``500ms``, ``1m30s`` or ``10`` into seconds.

    A bare number is read as seconds.

    Raises:
        ValueError: If the string is not a valid duration.
    """
    text = value.strip().lower()
    if not text:
        msg = "empty duration"
        raise ValueError(msg)
    try:
        return float(text)
    except ValueError:
        pass

    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        msg = f"invalid duration: {value!r}"
        raise ValueError(msg)
    return seconds


def _lower_keys(data: Any) -> Any:
    if isinstance(data, dict):
        return {str(key).lower(): value for key, value in data.items()}
    return data


class MetricDefinition(pydantic.BaseModel):
    """One configured query and the rules for interpreting its rows.

    Keys in the source file are case-insensitive. Column, label and bucket
    names are lower-cased on decode to match the decoded row keys.
    """

    model_config = pydantic.ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    context: str = ""
    labels: tuple[str, ...] = ()
    metrics_desc: dict[str, str] = pydantic.Field(
        default_factory=dict,
        alias="metricsdesc",
    )
    metrics_type: dict[str, str] = pydantic.Field(
        default_factory=dict,
        alias="metricstype",
    )
    metrics_buckets: dict[str, dict[str, str]] = pydantic.Field(
        default_factory=dict,
        alias="metricsbuckets",
    )
    field_to_append: str = pydantic.Field("", alias="fieldtoappend")
    request: str = ""
    ignore_zero_result: bool = pydantic.Field(False, alias="ignorezeroresult")
    query_timeout: str = pydantic.Field("", alias="querytimeout")
    scrape_interval: str = pydantic.Field("", alias="scrapeinterval")

    @pydantic.model_validator(mode="before")
    @classmethod
    def _case_insensitive_keys(cls, data: Any) -> Any:
        return _lower_keys(data)

    @pydantic.field_validator("labels", mode="after")
    @classmethod
    def _lower_labels(cls, labels: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(label.lower() for label in labels)

    @pydantic.field_validator("metrics_desc", mode="after")
    @classmethod
    def _lower_columns(cls, desc: dict[str, str]) -> dict[str, str]:
        return {column.lower(): help_text for column, help_text in desc.items()}

    @pydantic.field_validator("metrics_type", mode="after")
    @classmethod
    def _lower_types(cls, types: dict[str, str]) -> dict[str, str]:
        return {column.lower(): kind.lower() for column, kind in types.items()}

    @pydantic.field_validator("metrics_buckets", mode="after")
    @classmethod
    def _lower_buckets(
        cls,
        buckets: dict[str, dict[str, str]],
    ) -> dict[str, dict[str, str]]:
        return {
            column.lower(): {field.lower(): bound for field, bound in bounds.items()}
            for column, bounds in buckets.items()
        }

    @pydantic.field_validator("field_to_append", mode="after")
    @classmethod
    def _lower_field(cls, field: str) -> str:
        return field.lower()

    @pydantic.field_validator("query_timeout", "scrape_interval", mode="before")
    @classmethod
    def _duration_as_text(cls, value: Any) -> Any:
        if isinstance(value, int | float) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def identity(self) -> str:
        """Key identifying the definition across reloads."""
        return f"{self.context}|{self.request}"

    def kind_of(self, column: str) -> str:
        """Declared metric kind of a column; undeclared columns are gauges."""
        return self.metrics_type.get(column, "gauge")

    def timeout(self, default: float) -> float:
        """Query timeout in seconds, falling back to ``default``."""
        if not self.query_timeout:
            return default
        return parse_duration(self.query_timeout)

    def min_interval(self) -> float | None:
        """Minimum seconds between two runs, or None to run every cycle."""
        if not self.scrape_interval:
            return None
        return parse_duration(self.scrape_interval)

    def problems(self) -> list[str]:
        """Configuration problems that make this definition unusable."""
        found = []
        if not self.request.strip():
            found.append("request is empty; did you forget to define request?")
        if not self.metrics_desc:
            found.append("metricsdesc is empty; did you forget to define metricsdesc?")
        for column, kind in self.metrics_type.items():
            if kind not in METRIC_KINDS:
                found.append(f"unknown metric type {kind!r} for column {column!r}")
            elif kind == "histogram" and column not in self.metrics_buckets:
                found.append(f"no metricsbuckets entry for histogram column {column!r}")
        for name, value in (
            ("querytimeout", self.query_timeout),
            ("scrapeinterval", self.scrape_interval),
        ):
            if not value:
                continue
            try:
                parse_duration(value)
            except ValueError:
                found.append(f"invalid {name} {value!r}")
        return found


class DefinitionsFile(pydantic.BaseModel):
    """Top-level layout of a definitions file: ``[[metric]]`` tables."""

    metric: list[MetricDefinition] = []

    @pydantic.model_validator(mode="before")
    @classmethod
    def _case_insensitive_keys(cls, data: Any) -> Any:
        return _lower_keys(data)


def parse_definitions(text: str, source: str) -> list[MetricDefinition]:
    """Decode TOML text into validated definitions.

    Raises:
        DefinitionReloadError: If the text is not valid TOML or does not
            match the definition layout.
    """
    try:
        return DefinitionsFile.model_validate(tomllib.loads(text)).metric
    except (tomllib.TOMLDecodeError, pydantic.ValidationError) as exc:
        msg = f"Error while loading {source}: {exc}"
        raise DefinitionReloadError(msg) from exc


def load_definitions_file(path: str | Path) -> list[MetricDefinition]:
    """Read and decode one definitions file.

    Raises:
        DefinitionReloadError: If the file cannot be read or decoded.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Error while loading {path}: {exc}"
        raise DefinitionReloadError(msg) from exc
    return parse_definitions(text, str(path))


def load_default_definitions(path: str | Path | None = None) -> list[MetricDefinition]:
    """Load the built-in definitions, or the file that replaces them."""
    if path:
        return load_definitions_file(path)
    text = (
        resources.files(__package__)
        .joinpath(DEFAULT_METRICS_RESOURCE)
        .read_text(encoding="utf-8")
    )
    return parse_definitions(text, DEFAULT_METRICS_RESOURCE)


def _hash_file(path: Path) -> bytes:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.digest()


class DefinitionStore:
    """Holds the active definitions and detects changes in their sources.

    The active set is the built-in defaults followed by every definition of
    each external source, in source order. It is only ever replaced as a
    whole tuple. Source fingerprints belong to the instance.
    """

    def __init__(
        self,
        sources: Sequence[str | Path] = (),
        defaults_path: str | Path | None = None,
    ):
        """Initialize the store with the built-in definitions active.

        Args:
            sources: Paths of external definition files.
            defaults_path: File replacing the packaged default definitions.

        Raises:
            DefinitionReloadError: If the default definitions cannot be loaded.
        """
        self._sources = [Path(source) for source in sources if str(source).strip()]
        self._defaults_path = defaults_path
        self._fingerprints: dict[int, bytes] = {}
        self._lock = threading.Lock()
        self._definitions = tuple(load_default_definitions(defaults_path))

    @property
    def sources(self) -> list[Path]:
        return list(self._sources)

    @property
    def definitions(self) -> tuple[MetricDefinition, ...]:
        with self._lock:
            return self._definitions

    def load(self) -> tuple[MetricDefinition, ...]:
        """Rebuild the active set from the defaults and every source.

        Returns:
            The newly published definitions.

        Raises:
            DefinitionReloadError: If any source fails to decode. The
                previous set stays published but the error is fatal.
        """
        loaded = load_default_definitions(self._defaults_path)
        if not self._sources:
            logger.debug("No custom metrics defined")
        for source in self._sources:
            try:
                loaded.extend(load_definitions_file(source))
            except DefinitionReloadError:
                logger.exception("Failed to load custom metrics", path=str(source))
                raise
            logger.info("Loaded custom metrics", path=str(source))

        definitions = tuple(loaded)
        with self._lock:
            self._definitions = definitions
        logger.info("Published metric definitions", count=len(definitions))
        return definitions

    def changed(self) -> bool:
        """Report whether any source differs from its last fingerprint.

        Every differing source has its fingerprint updated. Sources that
        cannot be read are logged and count as unchanged.
        """
        any_changed = False
        for index, source in enumerate(self._sources):
            logger.debug("Checking metrics definition file", path=str(source))
            try:
                digest = _hash_file(source)
            except OSError as exc:
                logger.error("Unable to get file hash", path=str(source), error=str(exc))
                continue
            with self._lock:
                if self._fingerprints.get(index) == digest:
                    continue
                self._fingerprints[index] = digest
            logger.info("Metrics definition file changed", path=str(source))
            any_changed = True
        return any_changed

    def refresh(self) -> bool:
        """Reload the definitions if any source changed.

        Returns:
            True if a reload happened.

        Raises:
            DefinitionReloadError: If the reload fails.
        """
        if not self.changed():
            return False
        self.load()
        return True
