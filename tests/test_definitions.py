"""Tests for metric definition decoding, validation and the definition store."""

from collections.abc import Callable
from pathlib import Path

import pydantic
import pytest

from oracledb_prometheus_exporter import definitions

SESSIONS_TOML = """
[[metric]]
context = "sessions"
labels = ["status"]
metricsdesc = { value = "Sessions by status." }
request = "select status, count(*) as value from v$session group by status"
"""

PROCESS_TOML = """
[[metric]]
context = "process"
metricsdesc = { count = "Processes." }
request = "select count(*) as count from v$process"
"""

# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def test_parse_definitions_reads_all_fields():
    """Every supported key is decoded into the definition model."""
    (definition,) = definitions.parse_definitions(
        """
[[metric]]
context = "db"
labels = ["type"]
metricsdesc = { value = "help text" }
metricstype = { value = "counter" }
metricsbuckets = { value = { le_10 = "10" } }
fieldtoappend = "name"
request = "select 1 from dual"
ignorezeroresult = true
querytimeout = "10s"
scrapeinterval = "5m"
""",
        "inline",
    )
    assert definition.context == "db"
    assert definition.labels == ("type",)
    assert definition.metrics_desc == {"value": "help text"}
    assert definition.metrics_type == {"value": "counter"}
    assert definition.metrics_buckets == {"value": {"le_10": "10"}}
    assert definition.field_to_append == "name"
    assert definition.request == "select 1 from dual"
    assert definition.ignore_zero_result is True
    assert definition.query_timeout == "10s"
    assert definition.scrape_interval == "5m"


def test_parse_definitions_keys_are_case_insensitive():
    """Mixed-case keys and names are normalized to lower case."""
    (definition,) = definitions.parse_definitions(
        """
[[Metric]]
Context = "db"
Labels = ["TYPE"]
MetricsDesc = { VALUE = "help" }
MetricsType = { Value = "HISTOGRAM" }
MetricsBuckets = { VALUE = { LE_10 = "10" } }
FieldToAppend = "NAME"
Request = "select 1 from dual"
""",
        "inline",
    )
    assert definition.labels == ("type",)
    assert definition.metrics_desc == {"value": "help"}
    assert definition.metrics_type == {"value": "histogram"}
    assert definition.metrics_buckets == {"value": {"le_10": "10"}}
    assert definition.field_to_append == "name"
    assert definition.problems() == []


def test_parse_definitions_numeric_durations_are_accepted():
    """Plain numbers are accepted for durations and read as seconds."""
    (definition,) = definitions.parse_definitions(
        """
[[metric]]
metricsdesc = { value = "help" }
request = "select 1 value from dual"
querytimeout = 3
""",
        "inline",
    )
    assert definition.timeout(default=5.0) == 3.0


def test_parse_definitions_invalid_toml_raises_reload_error():
    """Broken TOML is a fatal reload error naming the source."""
    with pytest.raises(definitions.DefinitionReloadError, match="broken.toml"):
        definitions.parse_definitions("[[metric]\ncontext = ", "broken.toml")


def test_parse_definitions_wrong_shape_raises_reload_error():
    """A structurally wrong definition is a fatal reload error."""
    with pytest.raises(definitions.DefinitionReloadError):
        definitions.parse_definitions(
            '[[metric]]\nlabels = "not-a-list"\n',
            "bad.toml",
        )


def test_definition_is_immutable():
    """Published definitions cannot be modified field by field."""
    definition = definitions.MetricDefinition(context="db")
    with pytest.raises(pydantic.ValidationError):
        definition.context = "other"


def test_default_definitions_are_packaged():
    """The built-in definitions load and are all valid."""
    defaults = definitions.load_default_definitions()
    contexts = {definition.context for definition in defaults}
    assert {"sessions", "activity", "tablespace", "wait_time"} <= contexts
    for definition in defaults:
        assert definition.problems() == []


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_problems_empty_request():
    """A definition without a query is reported."""
    definition = definitions.MetricDefinition(metrics_desc={"value": "help"})
    assert any("request" in problem for problem in definition.problems())


def test_problems_no_metric_columns():
    """A definition without metric columns is reported."""
    definition = definitions.MetricDefinition(request="select 1 from dual")
    assert any("metricsdesc" in problem for problem in definition.problems())


def test_problems_histogram_without_buckets():
    """Histogram columns need a bucket map."""
    definition = definitions.MetricDefinition(
        request="select 1 from dual",
        metrics_desc={"latency": "help"},
        metrics_type={"latency": "histogram"},
    )
    assert any("metricsbuckets" in problem for problem in definition.problems())


def test_problems_unknown_metric_type():
    """Only gauge, counter and histogram are accepted."""
    definition = definitions.MetricDefinition(
        request="select 1 from dual",
        metrics_desc={"value": "help"},
        metrics_type={"value": "summary"},
    )
    assert any("summary" in problem for problem in definition.problems())


def test_problems_invalid_duration():
    """A malformed query timeout is reported."""
    definition = definitions.MetricDefinition(
        request="select 1 from dual",
        metrics_desc={"value": "help"},
        query_timeout="soon",
    )
    assert any("querytimeout" in problem for problem in definition.problems())


def test_timeout_falls_back_to_default():
    """Without an override the global default applies."""
    definition = definitions.MetricDefinition()
    assert definition.timeout(default=7.0) == 7.0


def test_min_interval_unset_is_none():
    """Without a scrape interval the definition runs every cycle."""
    assert definitions.MetricDefinition().min_interval() is None


def test_kind_defaults_to_gauge():
    """Undeclared columns are gauges."""
    assert definitions.MetricDefinition().kind_of("value") == "gauge"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("10", 10.0),
        ("2.5", 2.5),
        ("500ms", 0.5),
        ("10s", 10.0),
        ("5m", 300.0),
        ("1h", 3600.0),
        ("1m30s", 90.0),
    ],
)
def test_parse_duration(text: str, expected: float):
    """Go-style durations and bare seconds are understood."""
    assert definitions.parse_duration(text) == pytest.approx(expected)


@pytest.mark.parametrize("text", ["", "soon", "10x", "s10", "1m 30s"])
def test_parse_duration_rejects_invalid(text: str):
    """Anything else is rejected."""
    with pytest.raises(ValueError):  # noqa: PT011
        definitions.parse_duration(text)


# ---------------------------------------------------------------------------
# Store: loading
# ---------------------------------------------------------------------------


def test_store_starts_with_default_definitions(write_toml: Callable[[str, str], Path]):
    """A new store publishes the defaults without reading custom sources."""
    defaults = write_toml("defaults.toml", PROCESS_TOML)
    store = definitions.DefinitionStore(
        sources=[write_toml("custom.toml", SESSIONS_TOML)],
        defaults_path=defaults,
    )
    assert [d.context for d in store.definitions] == ["process"]


def test_store_load_appends_sources_in_order(write_toml: Callable[[str, str], Path]):
    """Loading publishes the defaults followed by every source in order."""
    store = definitions.DefinitionStore(
        sources=[
            write_toml("b.toml", SESSIONS_TOML),
            write_toml("a.toml", PROCESS_TOML),
        ],
        defaults_path=write_toml("defaults.toml", PROCESS_TOML),
    )
    store.load()
    assert [d.context for d in store.definitions] == [
        "process",
        "sessions",
        "process",
    ]


def test_store_load_failure_is_fatal_and_keeps_previous(
    write_toml: Callable[[str, str], Path],
):
    """A broken source raises DefinitionReloadError and publishes nothing new."""
    broken = write_toml("broken.toml", "[[metric]\n")
    store = definitions.DefinitionStore(
        sources=[write_toml("ok.toml", SESSIONS_TOML), broken],
        defaults_path=write_toml("defaults.toml", PROCESS_TOML),
    )
    before = store.definitions

    with pytest.raises(definitions.DefinitionReloadError):
        store.load()

    assert store.definitions is before


def test_store_load_missing_source_is_fatal(
    tmp_path: Path,
    write_toml: Callable[[str, str], Path],
):
    """A source that does not exist cannot be loaded."""
    store = definitions.DefinitionStore(
        sources=[tmp_path / "missing.toml"],
        defaults_path=write_toml("defaults.toml", ""),
    )
    with pytest.raises(definitions.DefinitionReloadError):
        store.load()


def test_store_ignores_blank_source_entries(write_toml: Callable[[str, str], Path]):
    """Empty source strings are skipped."""
    store = definitions.DefinitionStore(
        sources=["", "  "],
        defaults_path=write_toml("defaults.toml", ""),
    )
    assert store.sources == []


# ---------------------------------------------------------------------------
# Store: change detection
# ---------------------------------------------------------------------------


def test_changed_first_check_reports_changed(write_toml: Callable[[str, str], Path]):
    """A source seen for the first time counts as changed."""
    store = definitions.DefinitionStore(
        sources=[write_toml("custom.toml", SESSIONS_TOML)],
        defaults_path=write_toml("defaults.toml", ""),
    )
    assert store.changed() is True


def test_changed_identical_content_reports_unchanged(
    write_toml: Callable[[str, str], Path],
):
    """Consecutive checks of identical content report unchanged."""
    store = definitions.DefinitionStore(
        sources=[write_toml("custom.toml", SESSIONS_TOML)],
        defaults_path=write_toml("defaults.toml", ""),
    )
    store.changed()
    assert store.changed() is False
    assert store.changed() is False


def test_changed_modification_reported_exactly_once(
    write_toml: Callable[[str, str], Path],
):
    """A byte-level modification is reported once, then unchanged again."""
    source = write_toml("custom.toml", SESSIONS_TOML)
    store = definitions.DefinitionStore(
        sources=[source],
        defaults_path=write_toml("defaults.toml", ""),
    )
    store.changed()

    source.write_text(SESSIONS_TOML + " ")

    assert store.changed() is True
    assert store.changed() is False


def test_changed_unreadable_source_reports_unchanged(
    tmp_path: Path,
    write_toml: Callable[[str, str], Path],
):
    """A source that cannot be hashed is treated as unchanged."""
    store = definitions.DefinitionStore(
        sources=[tmp_path / "missing.toml"],
        defaults_path=write_toml("defaults.toml", ""),
    )
    assert store.changed() is False


def test_changed_checks_every_source(write_toml: Callable[[str, str], Path]):
    """All sources get fingerprinted even after the first change is found."""
    first = write_toml("first.toml", SESSIONS_TOML)
    second = write_toml("second.toml", PROCESS_TOML)
    store = definitions.DefinitionStore(
        sources=[first, second],
        defaults_path=write_toml("defaults.toml", ""),
    )
    assert store.changed() is True
    assert store.changed() is False


def test_fingerprints_are_per_store(write_toml: Callable[[str, str], Path]):
    """Two stores over the same source do not share fingerprints."""
    source = write_toml("custom.toml", SESSIONS_TOML)
    defaults = write_toml("defaults.toml", "")
    first = definitions.DefinitionStore(sources=[source], defaults_path=defaults)
    second = definitions.DefinitionStore(sources=[source], defaults_path=defaults)

    first.changed()

    assert second.changed() is True


def test_refresh_reloads_only_on_change(write_toml: Callable[[str, str], Path]):
    """refresh() loads on the first check and after modifications only."""
    source = write_toml("custom.toml", SESSIONS_TOML)
    store = definitions.DefinitionStore(
        sources=[source],
        defaults_path=write_toml("defaults.toml", ""),
    )
    assert store.refresh() is True
    assert [d.context for d in store.definitions] == ["sessions"]
    assert store.refresh() is False

    source.write_text(PROCESS_TOML)

    assert store.refresh() is True
    assert [d.context for d in store.definitions] == ["process"]
