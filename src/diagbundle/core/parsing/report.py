"""Fallback parser for the administrative table statistics report.

Used when a node has no bean dump. The report is free text::

    Keyspace : ks1
        Read Count: 100
        Read Latency: 5 ms
        ...
            Table: t1
            SSTable count: 3
            ...
    ----------------

It yields the same sample variants as the dump readers so storage does not
care which source a node used. Latencies are reported in milliseconds and
are converted to microseconds, the unit bean dumps use.
"""

import logging
from collections.abc import Iterator, Sequence

from diagbundle.core.models import KeyspaceHistogram, PersistedSample, TableHistogram

logger = logging.getLogger(__name__)

SECTION_MARKER = "----------------"
TABLE_MARKER = "Table:"

# Shorter blocks are headers/summaries, not keyspace or table sections
MIN_KEYSPACE_SECTION_LINES = 6
MIN_TABLE_SECTION_LINES = 10

# (histogram name, sub-key, report label)
_TABLE_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("LiveSSTableCount", "Value", "SSTable count"),
    ("LiveDiskSpaceUsed", "Count", "Space used (live)"),
    ("TotalDiskSpaceUsed", "Count", "Space used (total)"),
    ("SnapshotsSize", "Value", "Space used by snapshots (total)"),
    ("CompressionRatio", "Value", "SSTable Compression Ratio"),
    ("MemtableLiveDataSize", "Value", "Memtable data size"),
    ("MemtableColumnsCount", "Value", "Memtable cell count"),
    ("MemtableOffHeapSize", "Value", "Memtable off heap memory used"),
    ("MemtableSwitchCount", "Value", "Memtable switch count"),
    ("ReadLatency", "Count", "Local read count"),
    ("ReadLatency", "Mean", "Local read latency"),
    ("WriteLatency", "Count", "Local write count"),
    ("WriteLatency", "Mean", "Local write latency"),
    ("PendingFlushes", "Count", "Pending flushes"),
    ("PercentRepaired", "Value", "Percent repaired"),
    ("BloomFilterFalsePositives", "Value", "Bloom filter false positives"),
    ("BloomFilterFalseRatio", "Value", "Bloom filter false ratio"),
    ("BloomFilterDiskSpaceUsed", "Value", "Bloom filter space used"),
    ("BloomFilterOffHeapMemoryUsed", "Value", "Bloom filter off heap memory used"),
    ("IndexSummaryOffHeapMemoryUsed", "Value", "Index summary off heap memory used"),
    (
        "CompressionMetadataOffHeapMemoryUsed",
        "Value",
        "Compression metadata off heap memory used",
    ),
    ("MinPartitionSize", "Value", "Compacted partition minimum bytes"),
    ("MaxPartitionSize", "Value", "Compacted partition maximum bytes"),
    ("MeanPartitionSize", "Value", "Compacted partition mean bytes"),
    ("DroppedMutations", "Count", "Dropped Mutations"),
)

# Releases before 3.0 call the partition estimate "Number of keys"
PARTITION_COUNT_LABELS = ("Number of partitions", "Number of keys")


def report_value(lines: Sequence[str], label: str) -> str:
    """Extract the value of a ``Label: value[ unit]`` field.

    Args:
        lines: Lines of the block to search.
        label: Label text; the first line containing it is used.

    Returns:
        The value text, converted from ms to microseconds when the unit is
        ``ms``. Empty string when the label or the colon is missing.
    """
    line = next((line for line in lines if label in line.strip()), None)
    if line is None:
        return ""
    parts = line.replace("NaN", "0.0").split(":")
    if len(parts) < 2:
        return ""
    value_parts = parts[1].strip().split(" ")
    if len(value_parts) == 2 and value_parts[1].strip().lower() == "ms":
        try:
            return str(float(value_parts[0]) * 1000.0)
        except ValueError:
            return value_parts[0]
    return value_parts[0]


def _partition_count(lines: Sequence[str]) -> str:
    for label in PARTITION_COUNT_LABELS:
        if any(label in line for line in lines):
            return report_value(lines, label)
    return ""


def _keyspace_samples(host: str, keyspace: str, lines: Sequence[str]) -> list[PersistedSample]:
    return [
        KeyspaceHistogram(host, keyspace, "ReadLatency", "Count", report_value(lines, "Read Count")),
        KeyspaceHistogram(host, keyspace, "ReadLatency", "Mean", report_value(lines, "Read Latency")),
        KeyspaceHistogram(host, keyspace, "ReadLatency", "DurationUnit", "microseconds"),
        KeyspaceHistogram(host, keyspace, "WriteLatency", "Count", report_value(lines, "Write Count")),
        KeyspaceHistogram(
            host, keyspace, "WriteLatency", "Mean", report_value(lines, "Write Latency")
        ),
        KeyspaceHistogram(host, keyspace, "WriteLatency", "DurationUnit", "microseconds"),
        KeyspaceHistogram(
            host, keyspace, "PendingFlushes", "Value", report_value(lines, "Pending Flushes")
        ),
    ]


def _table_samples(host: str, keyspace: str, lines: Sequence[str]) -> list[PersistedSample]:
    table = report_value(lines, "Table")
    samples: list[PersistedSample] = [
        TableHistogram(host, keyspace, table, name, key, report_value(lines, label))
        for name, key, label in _TABLE_FIELDS
    ]
    samples.append(
        TableHistogram(host, keyspace, table, "EstimatedPartitionCount", "Value", _partition_count(lines))
    )
    return samples


def parse_report(text: str, host: str) -> Iterator[PersistedSample]:
    """Parse a table statistics report into metric samples.

    Args:
        text: Whole report text.
        host: Host the report belongs to.

    Yields:
        Keyspace-level samples followed by the samples of each table.
    """
    for section in text.split(SECTION_MARKER):
        section_lines = section.split("\n")
        if len(section_lines) < MIN_KEYSPACE_SECTION_LINES:
            continue
        keyspace = report_value(section_lines, "Keyspace")
        if not keyspace:
            logger.debug(f"Skipping report section without keyspace for host {host}")
            continue
        yield from _keyspace_samples(host, keyspace, section_lines)

        # The split removes the marker, so put it back for the Table lookup
        for block in section.split(TABLE_MARKER)[1:]:
            table_lines = f"{TABLE_MARKER}{block}".split("\n")
            if len(table_lines) < MIN_TABLE_SECTION_LINES:
                continue
            yield from _table_samples(host, keyspace, table_lines)
