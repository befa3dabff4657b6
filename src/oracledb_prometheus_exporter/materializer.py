"""Metric materialization from decoded query rows.

Reinterprets a schema-less row (column name -> text) against a metric
definition, producing typed samples, and groups samples into Prometheus
metric families for the registry. Parsing problems are logged and skip the
affected metric or bucket only.
"""

import enum
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    HistogramMetricFamily,
)
from prometheus_client.metrics_core import Metric
from prometheus_client.utils import floatToGoString

from .definitions import MetricDefinition

logger = structlog.get_logger(__name__)

NAMESPACE = "oracledb"

_MAX_UINT64 = 2**64 - 1
_UINT_PATTERN = re.compile(r"[0-9]+", re.ASCII)
_TOTAL_SUFFIX = "_total"


class MetricKind(enum.StrEnum):
    GAUGE = "gauge"
    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricSample:
    """A single typed value ready for the registry.

    Histogram samples carry the observation count and a mapping from bucket
    upper bound to cumulative count; ``value`` is then the observation sum.
    """

    name: str
    kind: MetricKind
    value: float
    documentation: str = ""
    label_names: tuple[str, ...] = ()
    label_values: tuple[str, ...] = ()
    count: int | None = None
    buckets: Mapping[float, int] = field(default_factory=dict)


def clean_name(value: str) -> str:
    """Make a row value usable as a metric name suffix.

    Spaces become underscores; parentheses, forward slashes and asterisks are
    removed; the result is lower-cased.
    """
    value = value.replace(" ", "_")
    for char in "()/*":
        value = value.replace(char, "")
    return value.lower()


def build_fq_name(*parts: str) -> str:
    """Join the non-empty name parts with underscores."""
    return "_".join(part for part in parts if part)


def _parse_uint(text: str) -> int:
    cleaned = text.strip()
    if not _UINT_PATTERN.fullmatch(cleaned):
        msg = f"not an unsigned integer: {text!r}"
        raise ValueError(msg)
    number = int(cleaned)
    if number > _MAX_UINT64:
        msg = f"value out of range: {text!r}"
        raise ValueError(msg)
    return number


def _parse_buckets(
    row: Mapping[str, str],
    bounds: Mapping[str, str],
    column: str,
) -> dict[float, int]:
    """Parse the bucket columns of a histogram, skipping malformed entries."""
    buckets: dict[float, int] = {}
    for bucket_field, upper_bound in bounds.items():
        try:
            limit = float(upper_bound.strip())
        except ValueError:
            logger.error(
                "Unable to convert bucket limit value to float",
                metric=column,
                bucket_limit=upper_bound,
            )
            continue
        if not math.isfinite(limit):
            logger.error(
                "Bucket limit must be finite",
                metric=column,
                bucket_limit=upper_bound,
            )
            continue
        try:
            buckets[limit] = _parse_uint(row.get(bucket_field, ""))
        except ValueError:
            logger.error(
                "Unable to convert bucket value to int",
                metric=column,
                field=bucket_field,
                value=row.get(bucket_field, ""),
            )
    return buckets


def materialize(
    row: Mapping[str, str],
    definition: MetricDefinition,
    namespace: str = NAMESPACE,
) -> tuple[list[MetricSample], int]:
    """Turn one decoded row into metric samples.

    Every column declared in ``metrics_desc`` yields at most one sample, in
    declaration order. With ``field_to_append`` set, the sample name ends
    with the cleaned value of that field and carries no labels; otherwise
    the name ends with the column name and the declared labels are attached.

    Args:
        row: Decoded row with lower-cased column names.
        definition: Definition the row was queried for.
        namespace: First segment of every metric name.

    Returns:
        Tuple of (samples, count of samples emitted).
    """
    if definition.field_to_append:
        label_names: tuple[str, ...] = ()
        label_values: tuple[str, ...] = ()
        suffix = clean_name(row.get(definition.field_to_append, ""))
    else:
        label_names = definition.labels
        label_values = tuple(row.get(label, "") for label in definition.labels)
        suffix = None

    samples: list[MetricSample] = []
    for column, help_text in definition.metrics_desc.items():
        raw_value = row.get(column, "")
        try:
            value = float(raw_value.strip())
        except ValueError:
            logger.error(
                "Unable to convert current value to float",
                metric=column,
                metric_help=help_text,
                value=raw_value,
            )
            continue

        name = build_fq_name(
            namespace,
            definition.context,
            column if suffix is None else suffix,
        )
        kind = definition.kind_of(column)

        if kind == MetricKind.HISTOGRAM:
            bounds = definition.metrics_buckets.get(column)
            if bounds is None:
                logger.error("No metricsbuckets entry for histogram", metric=column)
                continue
            try:
                count = _parse_uint(row.get("count", ""))
            except ValueError:
                logger.error(
                    "Unable to convert count value to int",
                    metric=column,
                    metric_help=help_text,
                    value=row.get("count", ""),
                )
                continue
            samples.append(
                MetricSample(
                    name=name,
                    kind=MetricKind.HISTOGRAM,
                    value=value,
                    documentation=help_text,
                    label_names=label_names,
                    label_values=label_values,
                    count=count,
                    buckets=_parse_buckets(row, bounds, column),
                ),
            )
            continue

        try:
            metric_kind = MetricKind(kind)
        except ValueError:
            logger.error("Unknown metric type", metric=column, metric_type=kind)
            continue
        samples.append(
            MetricSample(
                name=name,
                kind=metric_kind,
                value=value,
                documentation=help_text,
                label_names=label_names,
                label_values=label_values,
            ),
        )

    return samples, len(samples)


def _new_family(sample: MetricSample) -> Metric:
    labels = list(sample.label_names)
    if sample.kind == MetricKind.COUNTER:
        if sample.name.endswith(_TOTAL_SUFFIX):
            return CounterMetricFamily(sample.name, sample.documentation, labels=labels)
        # CounterMetricFamily would append _total; keep the configured name
        return Metric(sample.name, sample.documentation, "counter")
    if sample.kind == MetricKind.HISTOGRAM:
        return HistogramMetricFamily(sample.name, sample.documentation, labels=labels)
    return GaugeMetricFamily(sample.name, sample.documentation, labels=labels)


def _add_sample(family: Metric, sample: MetricSample) -> None:
    labels = list(sample.label_values)
    if isinstance(family, HistogramMetricFamily):
        buckets = [
            (floatToGoString(bound), cumulative)
            for bound, cumulative in sorted(sample.buckets.items())
        ]
        buckets.append(("+Inf", sample.count or 0))
        family.add_metric(labels, buckets=buckets, sum_value=sample.value)
    elif isinstance(family, GaugeMetricFamily | CounterMetricFamily):
        family.add_metric(labels, sample.value)
    else:
        family.add_sample(
            sample.name,
            dict(zip(sample.label_names, sample.label_values, strict=True)),
            sample.value,
        )


def build_metric_families(samples: Iterable[MetricSample]) -> list[Metric]:
    """Group samples sharing a name into Prometheus metric families.

    Samples of every definition in a cycle go through one call so that
    definitions producing the same name share a single family. Families keep
    the order in which their first sample appears; the first sample also
    fixes the kind and help text. Samples whose name the client library
    rejects, or whose kind conflicts with an existing family of the same
    name, are logged and dropped.

    Args:
        samples: Samples in emission order.

    Returns:
        Metric families ready to be yielded from a collector.
    """
    families: dict[str, Metric] = {}
    kinds: dict[str, MetricKind] = {}
    rejected: set[str] = set()
    for sample in samples:
        if sample.name in rejected:
            continue
        family = families.get(sample.name)
        if family is None:
            try:
                family = _new_family(sample)
            except ValueError as exc:
                logger.error("Invalid metric", metric=sample.name, error=str(exc))
                rejected.add(sample.name)
                continue
            families[sample.name] = family
            kinds[sample.name] = sample.kind
        elif kinds[sample.name] != sample.kind:
            logger.error(
                "Metric already collected with a different type",
                metric=sample.name,
                metric_type=sample.kind.value,
                collected_type=kinds[sample.name].value,
            )
            continue
        _add_sample(family, sample)
    return list(families.values())
