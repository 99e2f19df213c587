"""Readers turning bean dumps into canonical metric lines.

Both dump generations can contain faulted attribute reads: the collector
writes the exception inline, splitting the value line. Raw text therefore
goes through a classification pre-pass (value / exception / continuation)
before any line reaches the grammar, and ``NaN`` is replaced in a second
pass once the split values have been glued back together.
"""

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from diagbundle.core.errors import MetricsSourceError
from diagbundle.core.models import MetricSample, WriteResult, is_persisted
from diagbundle.core.parsing.metric_line import normalize_value, parse_metric
from diagbundle.core.ports import MetricSinkPort

logger = logging.getLogger(__name__)

# Written by the collector where an attribute read threw
FAULT_MARKER = "getting attribute"

_EXCEPTION_PREFIXES = ("at ", "at\t", "Caused by", "... ")

# Bean attributes that are metadata, not metrics
_JSON_METADATA_KEYS = frozenset({"name", "modelerType"})


class LineKind(Enum):
    VALUE = "value"
    EXCEPTION = "exception"
    CONTINUATION = "continuation"


def classify_line(raw: str) -> LineKind:
    """Classify one raw dump line.

    Args:
        raw: Line as read from the dump, with or without newline.

    Returns:
        EXCEPTION for stack frames and ``Caused by`` lines, CONTINUATION for
        a value line truncated by a fault marker, VALUE otherwise.
    """
    stripped = raw.strip()
    if FAULT_MARKER in raw:
        return LineKind.CONTINUATION
    if stripped.startswith(_EXCEPTION_PREFIXES) or stripped.endswith("common frames omitted"):
        return LineKind.EXCEPTION
    return LineKind.VALUE


def repair_lines(lines: Iterable[str]) -> Iterator[str]:
    """Strip inline exception noise and replace ``NaN`` in a dump stream.

    Exception lines are dropped. The text of a continuation line before the
    fault marker is kept and joined with the next value line, so a value
    split by an exception (``Na`` ... ``N``) is whole again before the
    ``NaN`` pass runs.

    Args:
        lines: Raw dump lines.

    Yields:
        Repaired lines without trailing newlines.
    """
    for line in _strip_exceptions(lines):
        yield line.replace("NaN", "0.0")


def _strip_exceptions(lines: Iterable[str]) -> Iterator[str]:
    pending = ""
    for raw in lines:
        kind = classify_line(raw)
        if kind is LineKind.EXCEPTION:
            continue
        if kind is LineKind.CONTINUATION:
            pending += raw.split(FAULT_MARKER, 1)[0].strip()
            continue
        text = raw.strip()
        if pending:
            text = pending + text
            pending = ""
        yield text
    if pending:
        yield pending


def iter_plain_dump(lines: Iterable[str]) -> Iterator[str]:
    """Yield canonical lines from a plain-text bean dump."""
    for line in repair_lines(lines):
        if line:
            yield line


def _format_attribute(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return normalize_value(str(value))


def iter_json_dump(text: str) -> Iterator[str]:
    """Flatten a JSON bean dump into canonical lines.

    Each bean whose name has the ``domain:label=value,...`` form yields one
    line per attribute, using the same grammar as the plain-text dump.

    Args:
        text: Whole JSON document (``{"beans": [...]}``).

    Yields:
        Canonical metric lines.

    Raises:
        MetricsSourceError: If the document is not a bean dump.
    """
    repaired = "\n".join(repair_lines(text.splitlines()))
    try:
        document = json.loads(repaired)
    except json.JSONDecodeError as e:
        raise MetricsSourceError(f"Invalid JSON bean dump: {e}") from e
    beans = document.get("beans") if isinstance(document, dict) else None
    if not isinstance(beans, list):
        raise MetricsSourceError("JSON bean dump has no 'beans' array")

    for bean in beans:
        if not isinstance(bean, dict):
            continue
        name = str(bean.get("name") or "")
        if ":" not in name:
            logger.info(f"Unable to parse metric json value {name!r}")
            continue
        domain, labels = name.split(":", 1)
        prefix = f"{domain}{{{labels}}}[]"
        for attribute, value in bean.items():
            if attribute in _JSON_METADATA_KEYS:
                continue
            yield f"{prefix}{attribute}: {_format_attribute(value)}"


@dataclass
class LoadStats:
    """Counters of one metric load."""

    written: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.written + self.duplicates + self.failed + self.skipped


def load_metrics(
    lines: Iterable[str],
    host: str,
    sink: MetricSinkPort,
    progress_every: int = 50000,
) -> LoadStats:
    """Parse canonical lines and persist every storable sample.

    Args:
        lines: Canonical metric lines from either dump reader.
        host: Host the samples belong to.
        sink: Store handle owned by the calling worker.
        progress_every: Log progress after this many written samples.

    Returns:
        LoadStats with per-outcome counts.
    """
    samples = (parse_metric(line, host) for line in lines)
    return store_samples(samples, host, sink, progress_every)


def store_samples(
    samples: Iterable[MetricSample],
    host: str,
    sink: MetricSinkPort,
    progress_every: int = 50000,
) -> LoadStats:
    """Persist every storable sample; Ignored and NoMatch are counted as skipped."""
    stats = LoadStats()
    for sample in samples:
        if not is_persisted(sample):
            stats.skipped += 1
            continue
        result = sink.write(sample)  # type: ignore[arg-type]
        if result is WriteResult.WRITTEN:
            stats.written += 1
            if progress_every and stats.written % progress_every == 0:
                logger.info(f"{stats.written} metrics parsed for host ({host})")
        elif result is WriteResult.DUPLICATE:
            stats.duplicates += 1
        else:
            stats.failed += 1
    logger.info(
        f"{stats.written} metrics parsed for host ({host}), "
        f"{stats.duplicates} duplicates, {stats.failed} failed"
    )
    return stats
