"""Canonical metric line grammar.

A canonical line looks like::

    org.apache.cassandra.metrics{type=Table,keyspace=ks1,scope=t1,name=ReadLatency}[]Count: 42

that is ``namespace{labels}[array indices]key: value``. Both bean dump
readers produce this form, so every source converges on ``parse_metric``.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from diagbundle.core.models import (
    DbCounter,
    GarbageCollectorMetric,
    GenericMetric,
    Ignored,
    InternalTask,
    KeyspaceHistogram,
    MemoryPoolMetric,
    MetricSample,
    NoMatch,
    RuntimeMetric,
    ServiceMetric,
    TableHistogram,
)

_LINE_PATTERN = re.compile(
    r"(?P<namespace>.*?)\{(?P<labels>.*)\}\[(?P<indices>.*?)\](?P<key>.*?):\s*(?P<value>.*)"
)

CASSANDRA_METRICS = "org.apache.cassandra.metrics"
CASSANDRA_DB = "org.apache.cassandra.db"
CASSANDRA_INTERNAL = "org.apache.cassandra.internal"
CASSANDRA_SERVICE = "org.apache.cassandra.service"
JAVA_LANG = "java.lang"

# Namespaces that parse fine but carry nothing report logic reads
IGNORED_NAMESPACES = frozenset(
    {
        "org.apache.cassandra.request",
        "org.apache.cassandra.net",
        "org.apache.cassandra.auth",
        "org.apache.cassandra.transport",
        "java.nio",
    }
)

# Line prefixes that are not metrics (bean server header, multi-line payloads)
IGNORED_PREFIXES = ("JMImplementation", "generation")


@dataclass(frozen=True)
class ParsedExpression:
    """The five parts of a canonical line."""

    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    array_index: tuple[str, ...] = ()
    key: str = ""
    value: str = ""

    def label(self, name: str) -> str:
        return self.labels.get(name, "")

    @property
    def joined_indices(self) -> str:
        return ".".join(self.array_index)


def normalize_value(value: str) -> str:
    """Normalise a textual value; ``NaN`` becomes ``0.0``."""
    return value.strip().replace("NaN", "0.0")


def _parse_labels(text: str) -> dict[str, str]:
    labels: dict[str, str] = {}
    for part in text.split(","):
        name, sep, value = part.partition("=")
        if not sep:
            continue
        labels[name.strip()] = value.strip()
    return labels


def parse_expression(line: str) -> ParsedExpression | None:
    """Split a canonical line into its parts.

    Args:
        line: One canonical metric line.

    Returns:
        ParsedExpression, or None when the line does not follow the grammar.
    """
    match = _LINE_PATTERN.match(line.strip())
    if match is None:
        return None
    indices = tuple(i for i in match.group("indices").replace(" ", "").split(",") if i)
    return ParsedExpression(
        namespace=match.group("namespace").strip(),
        labels=_parse_labels(match.group("labels")),
        array_index=indices,
        key=match.group("key").strip(),
        value=normalize_value(match.group("value")),
    )


# --- Variant constructors, one per (namespace, type) family ---


def _cassandra_metric(host: str, expr: ParsedExpression) -> MetricSample:
    mtype = expr.label("type")
    name = expr.label("name")
    if mtype in ("ColumnFamily", "Table"):
        table = expr.label("table") or expr.label("columnfamily") or expr.label("scope")
        return TableHistogram(host, expr.label("keyspace"), table, name, expr.key, expr.value)
    if mtype == "Keyspace":
        return KeyspaceHistogram(host, expr.label("keyspace"), name, expr.key, expr.value)
    return GenericMetric(host, mtype, expr.label("scope"), name, expr.key, expr.value)


def _db_counter(host: str, expr: ParsedExpression) -> MetricSample:
    keyspace = expr.label("keyspace")
    table = expr.label("table") or expr.label("columnfamily")
    # Commitlog/CompactionManager share key names without a keyspace label
    key = expr.key if keyspace else f"{expr.label('type')}.{expr.key}"
    return DbCounter(host, keyspace, table, key, expr.value)


def _internal_task(host: str, expr: ParsedExpression) -> MetricSample:
    return InternalTask(host, expr.label("type"), expr.key, expr.value)


def _service_metric(host: str, expr: ParsedExpression) -> MetricSample:
    return ServiceMetric(host, expr.label("type"), expr.key, expr.value)


def _java_lang(host: str, expr: ParsedExpression) -> MetricSample:
    mtype = expr.label("type")
    indices = expr.joined_indices
    if mtype == "MemoryPool":
        return MemoryPoolMetric(host, expr.label("name"), f"{indices}.{expr.key}", expr.value)
    if mtype == "GarbageCollector":
        return GarbageCollectorMetric(
            host,
            mtype,
            expr.label("name"),
            expr.label("key"),
            f"{indices}.{expr.key}",
            expr.value,
        )
    # The trailing key alone is not unique (SystemProperties, MemoryManager)
    if "key" in expr.labels:
        pkey = expr.label("key")
    elif "name" in expr.labels:
        pkey = f"{expr.label('name')}.{expr.key}"
    else:
        pkey = expr.key
    key = f"{indices}.{pkey}" if indices else pkey
    return RuntimeMetric(host, mtype, key, expr.value)


_Constructor = Callable[[str, ParsedExpression], MetricSample]

_DISPATCH: dict[str, _Constructor] = {
    CASSANDRA_METRICS: _cassandra_metric,
    CASSANDRA_DB: _db_counter,
    CASSANDRA_INTERNAL: _internal_task,
    CASSANDRA_SERVICE: _service_metric,
    JAVA_LANG: _java_lang,
}


def classify(host: str, expr: ParsedExpression) -> MetricSample:
    """Select the sample variant for a parsed expression."""
    if expr.namespace in IGNORED_NAMESPACES:
        return Ignored(expr.namespace)
    constructor = _DISPATCH.get(expr.namespace)
    if constructor is None:
        return NoMatch(expr.namespace)
    return constructor(host, expr)


def parse_metric(line: str, host: str) -> MetricSample:
    """Parse one canonical line into a metric sample.

    Unparseable or uninteresting lines are never an error: they come back
    as ``NoMatch`` or ``Ignored``.

    Args:
        line: Canonical metric line.
        host: Host the sample belongs to.

    Returns:
        The sample variant for the line.
    """
    stripped = line.strip()
    if not stripped:
        return NoMatch()
    if stripped.startswith(IGNORED_PREFIXES):
        return Ignored(stripped.split("{", 1)[0])
    expr = parse_expression(stripped)
    if expr is None:
        return NoMatch()
    return classify(host, expr)
